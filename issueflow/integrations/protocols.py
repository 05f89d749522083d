"""Collaborator interfaces the orchestrator depends on.

Each protocol has one production implementation (GitHub, git, Vercel,
wiki checkout, LLM, Discord) and one in-memory implementation in
issueflow.integrations.memory. The orchestrator only ever sees these
protocols, injected through its constructor.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from issueflow.core.models import (
    AgentContext,
    AgentResult,
    ChatMessage,
    Deployment,
    HealthReport,
    Issue,
    IssueComment,
    PullRequest,
    Task,
)
from issueflow.tools.sandbox import ToolSandbox


@runtime_checkable
class AgentInvoker(Protocol):
    def invoke(
        self,
        agent_name: str,
        context: AgentContext,
        sandbox: Optional[ToolSandbox] = None,
    ) -> AgentResult:
        """Run one agent. Failures are reported via AgentResult.success, not raised."""
        ...


@runtime_checkable
class IssueTracker(Protocol):
    def get_issue(self, issue_number: int) -> Issue: ...

    def get_issue_with_comments(self, issue_number: int) -> tuple[Issue, list[IssueComment]]: ...

    def list_issues(self, labels: Optional[list[str]] = None, state: str = "open") -> list[Issue]: ...

    def add_comment(self, issue_number: int, body: str) -> None: ...

    def add_label(self, issue_number: int, label: str) -> None: ...

    def remove_label(self, issue_number: int, label: str) -> None: ...

    def close_issue(self, issue_number: int, comment: Optional[str] = None) -> None: ...

    def reopen_issue(self, issue_number: int) -> None: ...

    def create_issue(self, title: str, body: str, labels: Optional[list[str]] = None) -> Issue: ...

    def create_pull_request(
        self, title: str, body: str, head: str, base: str, issue_number: Optional[int] = None,
    ) -> PullRequest: ...

    def link_pull_request(self, issue_number: int, pr_number: int, pr_url: str) -> None: ...


@runtime_checkable
class VersionControl(Protocol):
    def create_branch(self, branch_name: str, from_branch: str = "main") -> None: ...

    def has_uncommitted_changes(self) -> bool: ...

    def commit(self, message: str, files: Optional[list[str]] = None) -> str: ...

    def push(self, branch_name: str) -> None: ...


@runtime_checkable
class DeploymentPlatform(Protocol):
    def create_deployment(self, branch_name: str, target: str) -> Deployment: ...

    def get_deployment(self, deployment_id: str) -> Deployment: ...

    def wait_for_deployment(
        self, deployment_id: str, timeout_seconds: float = 600, poll_interval_seconds: float = 5,
    ) -> Deployment: ...

    def get_deployment_logs(self, deployment_id: str) -> list[str]: ...

    def check_health(self, url: str) -> HealthReport: ...


@runtime_checkable
class KnowledgeBase(Protocol):
    def get_page(self, page: str) -> str: ...

    def update_page(self, page: str, content: str) -> None: ...

    def append_to_page(self, page: str, content: str) -> None: ...

    def create_page(self, page: str, content: str) -> None: ...

    def commit(self, message: str) -> None: ...

    def push(self) -> None: ...


@runtime_checkable
class Decomposer(Protocol):
    def should_decompose(self, task: Task, intake_output: str) -> bool: ...

    def decompose(self, task: Task) -> list[str]:
        """Create child work items; return their task ids."""
        ...


@runtime_checkable
class ChatChannel(Protocol):
    def send(self, message: ChatMessage) -> bool:
        """Deliver one status card; False when the channel refused it."""
        ...
