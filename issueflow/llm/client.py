"""OpenRouter chat completions for the pipeline agents.

Every agent call goes through OpenRouterClient.complete(). Plain stages
send a system prompt and one user message; the file-mutating stage also
passes tool schemas and feeds tool results back as ``tool`` messages.

Transient failures (HTTP 429, 5xx, timeouts, refused connections) are
retried with exponential backoff. Auth, unknown-model and other 4xx
responses fail immediately.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from issueflow.core.config import LLMConfig
from issueflow.core.exceptions import (
    AuthenticationError,
    LLMError,
    ModelNotFoundError,
    RateLimitError,
    ResponseParseError,
)

logger = logging.getLogger("issueflow.llm")

_APP_HEADERS = {
    "HTTP-Referer": "https://github.com/issueflow",
    "X-Title": "IssueFlow",
}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass
class LLMMessage:
    role: str
    content: Optional[str]
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass
class LLMResponse:
    """One assistant turn plus the token accounting OpenRouter reported."""

    content: Optional[str]
    model: str
    tokens_used: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


class _Retryable(Exception):
    def __init__(self, error: Exception, note: str):
        super().__init__(note)
        self.error = error
        self.note = note


class OpenRouterClient:
    """Synchronous OpenRouter client. The httpx client is created on first use."""

    def __init__(self, config: Optional[LLMConfig] = None, api_key: Optional[str] = None):
        self.config = config or LLMConfig()
        self.api_key = api_key or os.getenv("OPENROUTER_API_KEY", "")
        self.base_url = self.config.base_url.rstrip("/")
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self.config.timeout_seconds))
        return self._client

    def complete(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        tools: Optional[list[dict[str, Any]]] = None,
    ) -> LLMResponse:
        """Run one chat completion.

        ``tools`` enables function calling; requested calls come back in
        ``LLMResponse.tool_calls``. Temperature and max tokens fall back
        to the configured defaults.
        """
        if not self.api_key:
            raise AuthenticationError("OPENROUTER_API_KEY not set")

        payload: dict[str, Any] = {
            "model": model,
            "messages": [message.to_dict() for message in messages],
            "temperature": self.config.default_temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.config.default_max_tokens,
        }
        if tools:
            payload.update(tools=tools, tool_choice="auto")

        attempts = self.config.provider_retries + 1
        last: Optional[_Retryable] = None
        for attempt in range(attempts):
            try:
                data = self._post(payload)
            except _Retryable as retry:
                last = retry
                delay = _backoff_delay(attempt, self.config.provider_backoff_seconds)
                logger.warning(
                    "%s; retrying in %.1fs (attempt %d/%d)", retry.note, delay, attempt + 1, attempts,
                )
                time.sleep(delay)
                continue
            return _parse_completion(data, model)

        if last is not None and isinstance(last.error, RateLimitError):
            raise RateLimitError(f"Still rate limited after {attempts} attempts")
        raise LLMError(f"Request failed after {attempts} attempts: {last.note if last else 'no attempts'}")

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", **_APP_HEADERS}
        try:
            resp = self.client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            raise _Retryable(e, f"Network error: {e}") from e

        status = resp.status_code
        if status == 401:
            raise AuthenticationError("Invalid API key")
        if status == 404:
            raise ModelNotFoundError(f"Model not found: {payload['model']}")
        if status == 429:
            raise _Retryable(RateLimitError("Rate limited (HTTP 429)"), "Rate limited")
        if status >= 500:
            raise _Retryable(LLMError(f"Server error {status}"), f"Server error {status}")
        if status >= 400:
            raise LLMError(f"Request rejected: {status} {resp.text[:200]}")
        return resp.json()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def _parse_completion(data: dict[str, Any], requested_model: str) -> LLMResponse:
    try:
        choice = data["choices"][0]
        message = choice["message"]
    except (KeyError, IndexError, TypeError) as e:
        raise ResponseParseError(f"Malformed completion response: {str(data)[:500]}") from e

    usage = data.get("usage") or {}
    response = LLMResponse(
        content=message.get("content") or "",
        model=data.get("model", requested_model),
        tokens_used=usage.get("total_tokens", 0),
        input_tokens=usage.get("prompt_tokens", 0),
        output_tokens=usage.get("completion_tokens", 0),
        tool_calls=[_parse_tool_call(raw) for raw in message.get("tool_calls") or []],
        finish_reason=choice.get("finish_reason"),
        raw=data,
    )
    logger.debug(
        "LLM response: model=%s tokens=%d tool_calls=%d",
        response.model, response.tokens_used, len(response.tool_calls),
    )
    return response


def _parse_tool_call(raw: dict[str, Any]) -> ToolCall:
    function = raw.get("function") or {}
    name = function.get("name", "")
    arguments = function.get("arguments") or "{}"
    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments)
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"Invalid tool call arguments for {name}: {e}") from e
    return ToolCall(id=raw.get("id", ""), name=name, arguments=arguments)


def _backoff_delay(attempt: int, base_seconds: float) -> float:
    return min(base_seconds * (2 ** attempt), 60.0)
