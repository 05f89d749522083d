"""Security primitives for IssueFlow."""

from issueflow.security.policy import DEFAULT_MAX_READ_BYTES, SandboxPolicy

__all__ = ["DEFAULT_MAX_READ_BYTES", "SandboxPolicy"]
