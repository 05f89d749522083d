"""Long-running workflows that feed issues into the orchestrator."""

from issueflow.workflow.watcher import IssueWatcher, WatcherState

__all__ = [
    "IssueWatcher",
    "WatcherState",
]
