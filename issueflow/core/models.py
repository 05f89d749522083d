"""All Pydantic data models for IssueFlow.

Defines the persisted task record, the per-stage results, the todo list
carried between stages, and the messages exchanged with agents and
collaborators. Everything written to the task store is a model here.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(UTC)


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_CLOSURE_APPROVAL = "awaiting_closure_approval"
    DECOMPOSED = "decomposed"
    COMPLETED = "completed"
    FAILED = "failed"


class StageStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class DecisionKind(str, enum.Enum):
    PROCEED = "PROCEED"
    CLOSE = "CLOSE"
    REDIRECT = "REDIRECT"
    INVALID = "INVALID"
    NEEDS_MORE_INFO = "NEEDS_MORE_INFO"
    REQUEST_APPROVAL = "REQUEST_APPROVAL"
    DECOMPOSE = "DECOMPOSE"
    ABSENT = "ABSENT"  # no marker, or a marker naming an unknown value


class TodoStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class TodoPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class DeploymentState(str, enum.Enum):
    QUEUED = "QUEUED"
    INITIALIZING = "INITIALIZING"
    BUILDING = "BUILDING"
    READY = "READY"
    ERROR = "ERROR"
    CANCELED = "CANCELED"


class ChatLevel(str, enum.Enum):
    INFO = "info"
    PROGRESS = "progress"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Todo substrate
# ---------------------------------------------------------------------------

class TodoItem(BaseModel):
    id: str = Field(default_factory=_short_id)
    content: str
    status: TodoStatus = TodoStatus.PENDING
    priority: TodoPriority = TodoPriority.MEDIUM
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    completed_at: Optional[datetime] = None
    blocked_reason: Optional[str] = None
    agent_name: Optional[str] = None
    stage_index: Optional[int] = None


class TodoState(BaseModel):
    """The full todo list handed from one stage to the next."""
    task_id: str
    issue_number: Optional[int] = None
    todos: list[TodoItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class TodoSummary(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    blocked: int = 0


class TodoResult(BaseModel):
    success: bool
    message: str = ""
    error: Optional[str] = None
    todo: Optional[TodoItem] = None
    todos: Optional[list[TodoItem]] = None
    summary: Optional[TodoSummary] = None


# ---------------------------------------------------------------------------
# Task state
# ---------------------------------------------------------------------------

class IssueComment(BaseModel):
    user: str
    body: str
    created_at: str = ""


class UsageMetrics(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    duration_ms: int = 0


class StageDecision(BaseModel):
    """Decision marker extracted once from a completed stage's output."""
    kind: DecisionKind = DecisionKind.ABSENT
    raw: Optional[str] = None

    @property
    def is_absent(self) -> bool:
        return self.kind == DecisionKind.ABSENT


class StageResult(BaseModel):
    stage_name: str
    agent_name: str
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    output: Optional[str] = None
    usage: UsageMetrics = Field(default_factory=UsageMetrics)
    artifact_path: Optional[str] = None
    error: Optional[str] = None
    decision: Optional[StageDecision] = None


class DeploymentRecord(BaseModel):
    deployment_id: str
    url: str
    state: DeploymentState
    deployed_at: datetime = Field(default_factory=_now)
    healthy: bool = False
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None


class Task(BaseModel):
    """One pipeline run for one issue."""
    task_id: str
    issue_number: int
    title: str
    body: str = ""
    url: str = ""
    comments: list[IssueComment] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    branch_name: str = ""
    stages: list[StageResult] = Field(default_factory=list)
    current_stage: int = 0
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    error: Optional[str] = None
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    staging_deployment: Optional[DeploymentRecord] = None
    production_deployment: Optional[DeploymentRecord] = None
    todo_state: Optional[TodoState] = None
    parent_task_id: Optional[str] = None
    child_task_ids: list[str] = Field(default_factory=list)
    heal_attempts: dict[str, int] = Field(default_factory=dict)

    def touch(self) -> None:
        self.updated_at = _now()

    @property
    def active_stage(self) -> Optional[StageResult]:
        if 0 <= self.current_stage < len(self.stages):
            return self.stages[self.current_stage]
        return None


def task_id_for_issue(issue_number: int) -> str:
    return f"ISSUE-{issue_number}"


# ---------------------------------------------------------------------------
# Agent / collaborator messages
# ---------------------------------------------------------------------------

class AgentContext(BaseModel):
    """Everything an agent sees for one stage, rebuilt from persisted state."""
    task_id: str
    issue_number: int
    issue_title: str
    issue_body: str = ""
    issue_url: str = ""
    issue_comments: str = ""
    issue_labels: str = ""
    stage_index: int = 0
    previous_outputs: dict[str, str] = Field(default_factory=dict)
    todo_state: Optional[TodoState] = None
    extra: dict[str, Any] = Field(default_factory=dict)


class AgentResult(BaseModel):
    """Standardized output from any agent invocation."""
    agent_name: str
    success: bool
    output: str = ""
    usage: UsageMetrics = Field(default_factory=UsageMetrics)
    todo_state: Optional[TodoState] = None
    error: Optional[str] = None


class ToolResult(BaseModel):
    success: bool
    content: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class AuditEntry(BaseModel):
    timestamp: datetime = Field(default_factory=_now)
    operation: str
    path: str
    outcome: str  # "accepted", "rejected", "error"
    detail: Optional[str] = None


class Issue(BaseModel):
    number: int
    title: str
    body: str = ""
    url: str = ""
    state: str = "open"
    labels: list[str] = Field(default_factory=list)


class PullRequest(BaseModel):
    number: int
    url: str


class HealthReport(BaseModel):
    healthy: bool
    status_code: int = 0
    response_time_ms: int = 0
    error: Optional[str] = None


class Deployment(BaseModel):
    id: str
    url: str
    state: DeploymentState = DeploymentState.QUEUED


class ChatField(BaseModel):
    name: str
    value: str
    inline: bool = True


class ChatMessage(BaseModel):
    """A short status card for a chat channel; rendering is up to the channel."""
    title: str
    description: str = ""
    level: ChatLevel = ChatLevel.INFO
    fields: list[ChatField] = Field(default_factory=list)
    footer: Optional[str] = None
