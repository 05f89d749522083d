"""Configuration loader for IssueFlow.

Settings come from config/default.yaml, overlaid by config/<env>.yaml when
an environment is named, then by a handful of environment variables
(GitHub repo, task store location, decomposition toggle, Vercel project,
Discord channel).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from issueflow.core.exceptions import ConfigError


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class StoreConfig(BaseModel):
    tasks_dir: str = "tasks"


class LLMConfig(BaseModel):
    provider: str = "openrouter"
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "anthropic/claude-sonnet-4"
    default_temperature: float = 0.3
    default_max_tokens: int = 8000
    timeout_seconds: int = 300
    provider_retries: int = 2
    provider_backoff_seconds: float = 2.0
    max_tool_rounds: int = 25


class AgentsConfig(BaseModel):
    agents_dir: str = "agents"
    # agent name -> model id; agents without an entry use llm.default_model
    models: dict[str, str] = Field(default_factory=dict)

    def get_model(self, agent_name: str, default: str) -> str:
        return self.models.get(agent_name, default)


class OrchestratorConfig(BaseModel):
    max_heal_attempts: int = 3
    enable_auto_decomposition: bool = False
    intake_halt_decisions: list[str] = Field(default_factory=lambda: ["REDIRECT", "INVALID"])
    consensus_stage: Optional[int] = None
    consensus_sources: list[int] = Field(default_factory=list)


class SandboxConfig(BaseModel):
    base_dir: str = "."
    max_read_bytes: int = 10 * 1024 * 1024
    audit_log_path: Optional[str] = None


class GitHubConfig(BaseModel):
    api_url: str = "https://api.github.com"
    owner: str = ""
    repo: str = ""
    base_branch: str = "main"
    timeout_seconds: int = 30


class DeploymentConfig(BaseModel):
    enabled: bool = False
    api_url: str = "https://api.vercel.com"
    project_id: str = ""
    team_id: Optional[str] = None
    timeout_seconds: int = 600
    poll_interval_seconds: float = 5.0
    health_path: str = "/"


class WikiConfig(BaseModel):
    enabled: bool = False
    local_path: str = "wiki"


class DiscordConfig(BaseModel):
    enabled: bool = False
    api_url: str = "https://discord.com/api/v10"
    channel_id: str = ""
    timeout_seconds: int = 15


class WatcherConfig(BaseModel):
    label: str = "ai-pipeline"
    interval_seconds: int = 30
    state_file: str = "tasks/.watcher-state.json"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AppConfig(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    github: GitHubConfig = Field(default_factory=GitHubConfig)
    deployment: DeploymentConfig = Field(default_factory=DeploymentConfig)
    wiki: WikiConfig = Field(default_factory=WikiConfig)
    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    watcher: WatcherConfig = Field(default_factory=WatcherConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_TRUTHY = {"1", "true", "yes", "on"}


def _deep_merge(base: dict, override: dict) -> dict:
    """Nested dicts merge key by key; any other override value replaces."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        merged[key] = _deep_merge(current, value) if isinstance(current, dict) and isinstance(value, dict) else value
    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _apply_env_overrides(merged: dict[str, Any]) -> dict[str, Any]:
    owner = os.getenv("GITHUB_OWNER")
    if owner:
        merged.setdefault("github", {})["owner"] = owner
    repo = os.getenv("GITHUB_REPO")
    if repo:
        merged.setdefault("github", {})["repo"] = repo

    tasks_dir = os.getenv("ISSUEFLOW_TASKS_DIR")
    if tasks_dir:
        merged.setdefault("store", {})["tasks_dir"] = tasks_dir

    decomposition = os.getenv("ENABLE_AUTO_DECOMPOSITION")
    if decomposition is not None:
        merged.setdefault("orchestrator", {})["enable_auto_decomposition"] = (
            decomposition.strip().lower() in _TRUTHY
        )

    vercel_project = os.getenv("VERCEL_PROJECT_ID")
    if vercel_project:
        merged.setdefault("deployment", {})["project_id"] = vercel_project

    discord_channel = os.getenv("DISCORD_CHANNEL_ID")
    if discord_channel:
        merged.setdefault("discord", {})["channel_id"] = discord_channel

    return merged


def default_config_dir() -> Path:
    return Path(__file__).parent.parent.parent / "config"


def load_config(
    config_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Build AppConfig from the YAML files in config_dir plus env overrides.

    Raises ConfigError on unparsable YAML or values that fail validation.
    """
    if config_dir is None:
        config_dir = default_config_dir()

    merged = _load_yaml(config_dir / "default.yaml")

    if env:
        overlay = _load_yaml(config_dir / f"{env}.yaml")
        merged = _deep_merge(merged, overlay)

    merged = _apply_env_overrides(merged)

    try:
        return AppConfig(**merged)
    except ValueError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
