"""Shared fixtures for IssueFlow tests.

All tests use REAL dependencies: the file-backed task store on tmp_path,
real git repos, and the in-memory collaborators that ship with the
package in place of GitHub, Vercel and the wiki. No mock library.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Callable

import pytest
from dotenv import load_dotenv

# Load .env from project root so API keys are available to opt-in tests
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from issueflow.core.config import AppConfig
from issueflow.core.models import StageResult, Task
from issueflow.db.task_store import TaskStore
from issueflow.integrations.memory import (
    InMemoryDeploymentPlatform,
    InMemoryIssueTracker,
    InMemoryKnowledgeBase,
    InMemoryVersionControl,
    ScriptedAgentInvoker,
)
from issueflow.orchestrator.pipeline import PipelineDefinition, StageDefinition
from issueflow.orchestrator.runner import Orchestrator


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


# ---------------------------------------------------------------------------
# Pipelines
# ---------------------------------------------------------------------------

def make_pipeline(
    agents: tuple[str, ...] = ("intake", "detective", "archaeologist", "surgeon", "critic"),
    consensus_stage: int | None = 2,
    consensus_sources: tuple[int, ...] = (0, 1, 2),
    **stage_overrides: dict[str, Any],
) -> PipelineDefinition:
    """Small pipeline for orchestrator tests.

    ``stage_overrides`` maps an agent name to extra StageDefinition fields,
    e.g. ``surgeon={"tools_enabled": True}``.
    """
    stages = tuple(
        StageDefinition(
            name=f"Stage {i}: {agent.title()}",
            agent_name=agent,
            artifact_name=f"{agent}-report.md",
            **stage_overrides.get(agent, {}),
        )
        for i, agent in enumerate(agents)
    )
    return PipelineDefinition(
        stages=stages,
        intake_stage=0,
        consensus_stage=consensus_stage,
        consensus_sources=consensus_sources,
    )


def make_task(task_id: str = "ISSUE-42", stages: int = 3, **kwargs: Any) -> Task:
    defaults: dict[str, Any] = {
        "task_id": task_id,
        "issue_number": 42,
        "title": "Login button does nothing",
        "body": "Clicking login has no effect.",
        "branch_name": "fix/issue-42-login-button-does-nothing",
        "stages": [
            StageResult(stage_name=f"Stage {i}", agent_name=f"agent{i}") for i in range(stages)
        ],
    }
    defaults.update(kwargs)
    return Task(**defaults)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path) -> TaskStore:
    return TaskStore(tmp_path / "tasks")


@pytest.fixture
def tracker() -> InMemoryIssueTracker:
    tracker = InMemoryIssueTracker()
    tracker.add_issue(42, "Login button does nothing", "Clicking login has no effect.", ["bug"])
    return tracker


@pytest.fixture
def vcs() -> InMemoryVersionControl:
    return InMemoryVersionControl()


@pytest.fixture
def invoker() -> ScriptedAgentInvoker:
    return ScriptedAgentInvoker()


@pytest.fixture
def platform() -> InMemoryDeploymentPlatform:
    return InMemoryDeploymentPlatform()


@pytest.fixture
def wiki() -> InMemoryKnowledgeBase:
    return InMemoryKnowledgeBase()


@pytest.fixture
def build_orchestrator(store, invoker, tracker, vcs, tmp_path) -> Callable[..., Orchestrator]:
    """Factory for an Orchestrator wired to the shared fakes.

    Keyword arguments override any constructor argument.
    """
    def _build(**kwargs: Any) -> Orchestrator:
        params: dict[str, Any] = {
            "store": store,
            "invoker": invoker,
            "issue_tracker": tracker,
            "version_control": vcs,
            "pipeline": make_pipeline(),
            "sandbox_base_dir": tmp_path / "repo",
        }
        params.update(kwargs)
        Path(params["sandbox_base_dir"]).mkdir(parents=True, exist_ok=True)
        return Orchestrator(**params)

    return _build


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        store={"tasks_dir": str(tmp_path / "tasks")},
        github={"owner": "example", "repo": "sandbox"},
        sandbox={"base_dir": str(tmp_path)},
        agents={"agents_dir": str(tmp_path / "agents")},
    )
