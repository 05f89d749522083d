"""In-memory collaborators.

Each class satisfies one protocol from issueflow.integrations.protocols
and records what it was asked to do, so tests and dry runs can drive the
orchestrator without a tracker, git remote or deployment platform.
Methods named in ``fail_on`` raise the collaborator's error type.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

from issueflow.core.exceptions import (
    DeploymentError,
    IssueTrackerError,
    KnowledgeBaseError,
    VersionControlError,
)
from issueflow.core.models import (
    AgentContext,
    AgentResult,
    ChatMessage,
    Deployment,
    DeploymentState,
    HealthReport,
    Issue,
    IssueComment,
    PullRequest,
    Task,
    UsageMetrics,
)
from issueflow.tools.sandbox import ToolSandbox

logger = logging.getLogger("issueflow.integrations.memory")

ScriptedResponse = Union[str, AgentResult, Exception, Callable[[AgentContext, Optional[ToolSandbox]], Any]]


def _check(fail_on: set[str], method: str, error: type[Exception]) -> None:
    if method in fail_on:
        raise error(f"Simulated {method} failure")


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

@dataclass
class AgentCall:
    agent_name: str
    context: AgentContext
    sandbox: Optional[ToolSandbox] = None


class ScriptedAgentInvoker:
    """Replays queued responses per agent name.

    A response may be output text, a ready AgentResult, an exception to
    raise, or a callable taking (context, sandbox) and returning any of
    those. Agents with nothing queued return ``default_output``.
    """

    def __init__(
        self,
        responses: Optional[dict[str, Iterable[ScriptedResponse]]] = None,
        default_output: str = "## Summary\nAnalysis complete.",
        tokens_per_call: int = 100,
    ):
        self._queues: dict[str, list[ScriptedResponse]] = {
            name: list(items) for name, items in (responses or {}).items()
        }
        self.default_output = default_output
        self.tokens_per_call = tokens_per_call
        self.calls: list[AgentCall] = []

    def queue(self, agent_name: str, *responses: ScriptedResponse) -> None:
        self._queues.setdefault(agent_name, []).extend(responses)

    def calls_for(self, agent_name: str) -> list[AgentCall]:
        return [call for call in self.calls if call.agent_name == agent_name]

    def invoke(
        self,
        agent_name: str,
        context: AgentContext,
        sandbox: Optional[ToolSandbox] = None,
    ) -> AgentResult:
        self.calls.append(AgentCall(agent_name, context.model_copy(deep=True), sandbox))
        queue = self._queues.get(agent_name)
        response: ScriptedResponse = queue.pop(0) if queue else self.default_output

        if callable(response):
            response = response(context, sandbox)
        if isinstance(response, Exception):
            raise response
        if isinstance(response, AgentResult):
            return response

        usage = UsageMetrics(
            input_tokens=self.tokens_per_call // 2,
            output_tokens=self.tokens_per_call - self.tokens_per_call // 2,
            total_tokens=self.tokens_per_call,
            duration_ms=1,
        )
        return AgentResult(
            agent_name=agent_name,
            success=True,
            output=str(response),
            usage=usage,
            todo_state=sandbox.get_todo_state() if sandbox is not None else None,
        )


# ---------------------------------------------------------------------------
# Issue tracker
# ---------------------------------------------------------------------------

class InMemoryIssueTracker:
    def __init__(self, issues: Optional[Iterable[Issue]] = None, fail_on: Iterable[str] = ()):
        self.issues: dict[int, Issue] = {issue.number: issue for issue in issues or []}
        self.comments: dict[int, list[IssueComment]] = {}
        self.pull_requests: dict[int, PullRequest] = {}
        self.pr_heads: dict[str, int] = {}
        self.linked: dict[int, list[int]] = {}
        self.fail_on = set(fail_on)
        self._numbers = itertools.count(max(self.issues, default=0) + 1)
        self._pr_numbers = itertools.count(1000)

    def add_issue(self, number: int, title: str, body: str = "", labels: Optional[list[str]] = None) -> Issue:
        issue = Issue(
            number=number, title=title, body=body,
            url=f"https://tracker.local/issues/{number}", labels=list(labels or []),
        )
        self.issues[number] = issue
        self._numbers = itertools.count(max(self.issues) + 1)
        return issue

    def comment_bodies(self, issue_number: int) -> list[str]:
        return [c.body for c in self.comments.get(issue_number, [])]

    def get_issue(self, issue_number: int) -> Issue:
        _check(self.fail_on, "get_issue", IssueTrackerError)
        try:
            return self.issues[issue_number].model_copy(deep=True)
        except KeyError:
            raise IssueTrackerError(f"Issue #{issue_number} not found") from None

    def get_issue_with_comments(self, issue_number: int) -> tuple[Issue, list[IssueComment]]:
        _check(self.fail_on, "get_issue_with_comments", IssueTrackerError)
        issue = self.get_issue(issue_number)
        return issue, [c.model_copy() for c in self.comments.get(issue_number, [])]

    def list_issues(self, labels: Optional[list[str]] = None, state: str = "open") -> list[Issue]:
        _check(self.fail_on, "list_issues", IssueTrackerError)
        wanted = set(labels or [])
        return [
            issue.model_copy(deep=True)
            for issue in sorted(self.issues.values(), key=lambda i: i.number)
            if (state == "all" or issue.state == state) and wanted.issubset(issue.labels)
        ]

    def add_comment(self, issue_number: int, body: str) -> None:
        _check(self.fail_on, "add_comment", IssueTrackerError)
        self.comments.setdefault(issue_number, []).append(IssueComment(user="issueflow", body=body))

    def add_label(self, issue_number: int, label: str) -> None:
        _check(self.fail_on, "add_label", IssueTrackerError)
        issue = self._issue(issue_number)
        if label not in issue.labels:
            issue.labels.append(label)

    def remove_label(self, issue_number: int, label: str) -> None:
        _check(self.fail_on, "remove_label", IssueTrackerError)
        issue = self._issue(issue_number)
        if label in issue.labels:
            issue.labels.remove(label)

    def close_issue(self, issue_number: int, comment: Optional[str] = None) -> None:
        _check(self.fail_on, "close_issue", IssueTrackerError)
        if comment:
            self.add_comment(issue_number, comment)
        self._issue(issue_number).state = "closed"

    def reopen_issue(self, issue_number: int) -> None:
        _check(self.fail_on, "reopen_issue", IssueTrackerError)
        self._issue(issue_number).state = "open"

    def create_issue(self, title: str, body: str, labels: Optional[list[str]] = None) -> Issue:
        _check(self.fail_on, "create_issue", IssueTrackerError)
        number = next(self._numbers)
        self.add_issue(number, title, body, labels)
        return self.issues[number].model_copy(deep=True)

    def create_pull_request(
        self, title: str, body: str, head: str, base: str, issue_number: Optional[int] = None,
    ) -> PullRequest:
        _check(self.fail_on, "create_pull_request", IssueTrackerError)
        if head in self.pr_heads:
            raise IssueTrackerError(f"A pull request already exists for {head}")
        number = next(self._pr_numbers)
        pr = PullRequest(number=number, url=f"https://tracker.local/pull/{number}")
        self.pull_requests[number] = pr
        self.pr_heads[head] = number
        return pr

    def link_pull_request(self, issue_number: int, pr_number: int, pr_url: str) -> None:
        _check(self.fail_on, "link_pull_request", IssueTrackerError)
        self.linked.setdefault(issue_number, []).append(pr_number)
        self.add_comment(issue_number, f"\U0001f517 **Pull Request Created**\n\n{pr_url}")

    def _issue(self, issue_number: int) -> Issue:
        try:
            return self.issues[issue_number]
        except KeyError:
            raise IssueTrackerError(f"Issue #{issue_number} not found") from None


# ---------------------------------------------------------------------------
# Version control
# ---------------------------------------------------------------------------

class InMemoryVersionControl:
    def __init__(self, dirty: bool = False, fail_on: Iterable[str] = ()):
        self.dirty = dirty
        self.fail_on = set(fail_on)
        self.branches: list[str] = ["main"]
        self.current: str = "main"
        self.commits: list[str] = []
        self.pushed: list[str] = []

    def create_branch(self, branch_name: str, from_branch: str = "main") -> None:
        _check(self.fail_on, "create_branch", VersionControlError)
        if branch_name not in self.branches:
            self.branches.append(branch_name)
        self.current = branch_name

    def has_uncommitted_changes(self) -> bool:
        _check(self.fail_on, "has_uncommitted_changes", VersionControlError)
        return self.dirty

    def commit(self, message: str, files: Optional[list[str]] = None) -> str:
        _check(self.fail_on, "commit", VersionControlError)
        if not self.dirty:
            return ""
        self.commits.append(message)
        self.dirty = False
        return f"{len(self.commits):040x}"

    def push(self, branch_name: str) -> None:
        _check(self.fail_on, "push", VersionControlError)
        self.pushed.append(branch_name)


# ---------------------------------------------------------------------------
# Deployment platform
# ---------------------------------------------------------------------------

class InMemoryDeploymentPlatform:
    def __init__(
        self,
        final_state: DeploymentState = DeploymentState.READY,
        healthy: bool = True,
        fail_on: Iterable[str] = (),
    ):
        self.final_state = final_state
        self.healthy = healthy
        self.fail_on = set(fail_on)
        self.deployments: dict[str, Deployment] = {}
        self.targets: dict[str, str] = {}
        self.health_checks: list[str] = []
        self._ids = itertools.count(1)

    def create_deployment(self, branch_name: str, target: str) -> Deployment:
        _check(self.fail_on, "create_deployment", DeploymentError)
        deployment_id = f"dpl_{next(self._ids)}"
        slug = branch_name.replace("/", "-")
        deployment = Deployment(id=deployment_id, url=f"https://{slug}-{target}.deploy.local")
        self.deployments[deployment_id] = deployment
        self.targets[deployment_id] = target
        return deployment.model_copy()

    def get_deployment(self, deployment_id: str) -> Deployment:
        _check(self.fail_on, "get_deployment", DeploymentError)
        try:
            return self.deployments[deployment_id].model_copy()
        except KeyError:
            raise DeploymentError(f"Deployment {deployment_id} not found") from None

    def wait_for_deployment(
        self, deployment_id: str, timeout_seconds: float = 600, poll_interval_seconds: float = 5,
    ) -> Deployment:
        _check(self.fail_on, "wait_for_deployment", DeploymentError)
        deployment = self.deployments[deployment_id]
        deployment.state = self.final_state
        return deployment.model_copy()

    def get_deployment_logs(self, deployment_id: str) -> list[str]:
        _check(self.fail_on, "get_deployment_logs", DeploymentError)
        return [f"Building {deployment_id}", "Build completed"]

    def check_health(self, url: str) -> HealthReport:
        _check(self.fail_on, "check_health", DeploymentError)
        self.health_checks.append(url)
        if self.healthy:
            return HealthReport(healthy=True, status_code=200, response_time_ms=42)
        return HealthReport(healthy=False, status_code=500, response_time_ms=42, error="HTTP 500")


# ---------------------------------------------------------------------------
# Knowledge base
# ---------------------------------------------------------------------------

class InMemoryKnowledgeBase:
    def __init__(self, pages: Optional[dict[str, str]] = None, fail_on: Iterable[str] = ()):
        self.pages: dict[str, str] = dict(pages or {})
        self.fail_on = set(fail_on)
        self.commits: list[str] = []
        self.pushes = 0

    def get_page(self, page: str) -> str:
        _check(self.fail_on, "get_page", KnowledgeBaseError)
        return self.pages.get(page, "")

    def update_page(self, page: str, content: str) -> None:
        _check(self.fail_on, "update_page", KnowledgeBaseError)
        self.pages[page] = content

    def append_to_page(self, page: str, content: str) -> None:
        _check(self.fail_on, "append_to_page", KnowledgeBaseError)
        existing = self.pages.get(page, "")
        self.pages[page] = f"{existing}\n\n{content}" if existing else content

    def create_page(self, page: str, content: str) -> None:
        _check(self.fail_on, "create_page", KnowledgeBaseError)
        self.pages[page] = content

    def commit(self, message: str) -> None:
        _check(self.fail_on, "commit", KnowledgeBaseError)
        self.commits.append(message)

    def push(self) -> None:
        _check(self.fail_on, "push", KnowledgeBaseError)
        self.pushes += 1


# ---------------------------------------------------------------------------
# Decomposer
# ---------------------------------------------------------------------------

@dataclass
class StaticDecomposer:
    """Decomposer with a fixed verdict and a fixed list of child task ids."""
    decompose_into: list[str] = field(default_factory=list)
    error: Optional[Exception] = None
    decomposed: list[str] = field(default_factory=list)

    def should_decompose(self, task: Task, intake_output: str) -> bool:
        return bool(self.decompose_into) or self.error is not None

    def decompose(self, task: Task) -> list[str]:
        if self.error is not None:
            raise self.error
        self.decomposed.append(task.task_id)
        return list(self.decompose_into)


# ---------------------------------------------------------------------------
# Chat channel
# ---------------------------------------------------------------------------

class InMemoryChatChannel:
    def __init__(self, deliver: bool = True):
        self.deliver = deliver
        self.messages: list[ChatMessage] = []

    def send(self, message: ChatMessage) -> bool:
        self.messages.append(message)
        return self.deliver

    def titles(self) -> list[str]:
        return [m.title for m in self.messages]
