"""Custom exception hierarchy for IssueFlow.

Everything IssueFlow raises on purpose derives from IssueFlowError, with
one subclass branch per subsystem.
"""


class IssueFlowError(Exception):
    """Base exception for all IssueFlow errors."""


# ---------------------------------------------------------------------------
# Task state store
# ---------------------------------------------------------------------------

class TaskStoreError(IssueFlowError):
    """Failed to read or write persisted task state."""


class TaskNotFoundError(TaskStoreError):
    """No persisted record exists for the requested task id."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task state not found: {task_id}")


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class OrchestratorError(IssueFlowError):
    """Pipeline orchestration failure."""


class InvalidTransitionError(OrchestratorError):
    """Requested task status change is not a legal edge of the state machine."""


class StageExecutionError(OrchestratorError):
    """A stage could not be completed."""

    def __init__(self, stage_name: str, message: str):
        self.stage_name = stage_name
        super().__init__(f"{stage_name}: {message}")


# ---------------------------------------------------------------------------
# Agents / LLM
# ---------------------------------------------------------------------------

class AgentError(IssueFlowError):
    """An agent could not produce a report."""


class AgentInvocationError(AgentError):
    """The agent invoker reported an unsuccessful run."""


class AgentConfigNotFoundError(AgentError):
    """No prompt definition exists for the requested agent."""


class LLMError(IssueFlowError):
    """The model provider call did not yield a usable response."""


class RateLimitError(LLMError):
    """Still throttled (HTTP 429) after all retries."""


class AuthenticationError(LLMError):
    """Missing or rejected OpenRouter key."""


class ModelNotFoundError(LLMError):
    """OpenRouter does not know the configured model id."""


class ResponseParseError(LLMError):
    """Completion body or tool-call arguments could not be decoded."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(IssueFlowError):
    """A local tool (shell, git, sandbox) failed."""


class SandboxViolationError(ToolError):
    """A sandboxed file operation was rejected before touching the filesystem."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(reason)


class ShellTimeoutError(ToolError):
    """A subprocess ran past its timeout and was killed."""


# ---------------------------------------------------------------------------
# External collaborators
# ---------------------------------------------------------------------------

class IntegrationError(IssueFlowError):
    """An external collaborator call failed."""


class IssueTrackerError(IntegrationError):
    """Issue tracker API failure."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class VersionControlError(IntegrationError):
    """Branch, commit, push or change-request creation failed."""


class DeploymentError(IntegrationError):
    """Deployment creation, readiness polling or health check failed."""


class KnowledgeBaseError(IntegrationError):
    """Knowledge base (wiki) update failed."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(IssueFlowError):
    """Invalid or missing configuration."""
