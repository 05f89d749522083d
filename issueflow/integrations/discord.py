"""Discord channel for pipeline status cards.

Each ChatMessage becomes one embed posted through the bot REST API.
Delivery is best effort: a refused or failed post is logged and reported
as False, never raised, so chat outages can't fail a stage.
"""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime
from typing import Any, Optional

import httpx

from issueflow.core.config import DiscordConfig
from issueflow.core.exceptions import ConfigError
from issueflow.core.models import ChatLevel, ChatMessage

logger = logging.getLogger("issueflow.integrations.discord")

EMBED_COLORS = {
    ChatLevel.INFO: 0x3498DB,
    ChatLevel.PROGRESS: 0x9B59B6,
    ChatLevel.SUCCESS: 0x2ECC71,
    ChatLevel.WARNING: 0xF39C12,
    ChatLevel.ERROR: 0xE74C3C,
}

# Discord embed limits
_TITLE_LIMIT = 256
_DESCRIPTION_LIMIT = 4096
_FIELD_VALUE_LIMIT = 1024


class DiscordClient:
    """Posts status cards to one Discord channel as the configured bot."""

    def __init__(self, config: Optional[DiscordConfig] = None, token: Optional[str] = None):
        self.config = config or DiscordConfig()
        self.token = token or os.getenv("DISCORD_BOT_TOKEN", "")
        if not self.config.channel_id:
            raise ConfigError("discord.channel_id must be configured")
        if not self.token:
            raise ConfigError("DISCORD_BOT_TOKEN not set")
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.config.api_url.rstrip("/"),
                headers={"Authorization": f"Bot {self.token}"},
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    def send(self, message: ChatMessage) -> bool:
        path = f"/channels/{self.config.channel_id}/messages"
        try:
            resp = self.client.post(path, json={"embeds": [to_embed(message)]})
        except httpx.HTTPError as e:
            logger.error("Discord post failed for %r: %s", message.title, e)
            return False
        if resp.is_error:
            logger.error("Discord rejected %r (%d): %s", message.title, resp.status_code, resp.text[:200])
            return False
        logger.debug("Discord message sent: %s", message.title)
        return True

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def to_embed(message: ChatMessage) -> dict[str, Any]:
    embed: dict[str, Any] = {
        "title": message.title[:_TITLE_LIMIT],
        "color": EMBED_COLORS[message.level],
        "timestamp": datetime.now(UTC).isoformat(),
    }
    if message.description:
        embed["description"] = message.description[:_DESCRIPTION_LIMIT]
    if message.fields:
        embed["fields"] = [
            {"name": f.name, "value": f.value[:_FIELD_VALUE_LIMIT], "inline": f.inline}
            for f in message.fields
        ]
    if message.footer:
        embed["footer"] = {"text": message.footer}
    return embed
