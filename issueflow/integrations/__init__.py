"""Collaborator interfaces the orchestrator depends on."""

from issueflow.integrations.protocols import (
    AgentInvoker,
    ChatChannel,
    Decomposer,
    DeploymentPlatform,
    IssueTracker,
    KnowledgeBase,
    VersionControl,
)

__all__ = [
    "AgentInvoker",
    "ChatChannel",
    "Decomposer",
    "DeploymentPlatform",
    "IssueTracker",
    "KnowledgeBase",
    "VersionControl",
]
