"""Tests for issueflow/core/config.py: YAML cascade and env overrides."""

from pathlib import Path

import pytest

from issueflow.core.config import AppConfig, AgentsConfig, default_config_dir, load_config
from issueflow.core.exceptions import ConfigError


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    for name in ("GITHUB_OWNER", "GITHUB_REPO", "ISSUEFLOW_TASKS_DIR",
                 "ENABLE_AUTO_DECOMPOSITION", "VERCEL_PROJECT_ID"):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_app_config_defaults(self):
        config = AppConfig()
        assert config.store.tasks_dir == "tasks"
        assert config.orchestrator.max_heal_attempts == 3
        assert config.orchestrator.enable_auto_decomposition is False
        assert config.orchestrator.intake_halt_decisions == ["REDIRECT", "INVALID"]
        assert config.deployment.enabled is False
        assert config.watcher.label == "ai-pipeline"

    def test_agent_model_lookup(self):
        agents = AgentsConfig(models={"surgeon": "big/model"})
        assert agents.get_model("surgeon", "small/model") == "big/model"
        assert agents.get_model("critic", "small/model") == "small/model"


class TestLoadConfig:
    def test_shipped_default_yaml_loads(self):
        assert (default_config_dir() / "default.yaml").exists()
        config = load_config()
        assert config.llm.base_url.startswith("https://")
        assert config.agents.agents_dir == "agents"

    def test_missing_dir_gives_defaults(self, tmp_path):
        config = load_config(config_dir=tmp_path)
        assert config == AppConfig()

    def test_env_overlay_merges_deeply(self, tmp_path):
        (tmp_path / "default.yaml").write_text(
            "github:\n  owner: acme\n  repo: web\nllm:\n  default_temperature: 0.1\n"
        )
        (tmp_path / "staging.yaml").write_text("github:\n  repo: web-staging\n")
        config = load_config(config_dir=tmp_path, env="staging")
        assert config.github.owner == "acme"
        assert config.github.repo == "web-staging"
        assert config.llm.default_temperature == 0.1

    def test_env_vars_override_yaml(self, tmp_path, monkeypatch):
        (tmp_path / "default.yaml").write_text("github:\n  owner: acme\n")
        monkeypatch.setenv("GITHUB_OWNER", "other")
        monkeypatch.setenv("ISSUEFLOW_TASKS_DIR", "/var/tasks")
        monkeypatch.setenv("ENABLE_AUTO_DECOMPOSITION", "true")
        monkeypatch.setenv("VERCEL_PROJECT_ID", "prj_123")
        monkeypatch.setenv("DISCORD_CHANNEL_ID", "987")
        config = load_config(config_dir=tmp_path)
        assert config.github.owner == "other"
        assert config.store.tasks_dir == "/var/tasks"
        assert config.orchestrator.enable_auto_decomposition is True
        assert config.deployment.project_id == "prj_123"
        assert config.discord.channel_id == "987"

    def test_decomposition_env_false(self, tmp_path, monkeypatch):
        (tmp_path / "default.yaml").write_text("orchestrator:\n  enable_auto_decomposition: true\n")
        monkeypatch.setenv("ENABLE_AUTO_DECOMPOSITION", "0")
        assert load_config(config_dir=tmp_path).orchestrator.enable_auto_decomposition is False

    def test_invalid_yaml_raises(self, tmp_path):
        (tmp_path / "default.yaml").write_text("github: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(config_dir=tmp_path)

    def test_invalid_values_raise(self, tmp_path):
        (tmp_path / "default.yaml").write_text("orchestrator:\n  max_heal_attempts: lots\n")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(config_dir=tmp_path)
