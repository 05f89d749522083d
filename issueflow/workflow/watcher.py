"""Issue watcher: poll the tracker and run new labeled issues through the pipeline.

Issues are processed one at a time. The set of issues already picked up
is persisted to a small JSON state file so a restarted watcher does not
start the same issue twice.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from issueflow.core.exceptions import IssueFlowError
from issueflow.core.models import Issue, Task
from issueflow.integrations.protocols import IssueTracker
from issueflow.orchestrator.runner import Orchestrator

logger = logging.getLogger("issueflow.workflow.watcher")

SKIP_LABELS = frozenset({"in-progress", "completed", "awaiting-human-review"})


def _now() -> datetime:
    return datetime.now(UTC)


class WatcherState(BaseModel):
    processed_issues: list[int] = Field(default_factory=list)
    last_check_time: datetime = Field(default_factory=_now)


class IssueWatcher:
    """Polls for open issues carrying ``label`` and runs each one once."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        issue_tracker: IssueTracker,
        state_file: str | Path,
        label: Optional[str] = "ai-pipeline",
        interval_seconds: float = 30,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.orchestrator = orchestrator
        self.issue_tracker = issue_tracker
        self.state_file = Path(state_file)
        self.label = label
        self.interval_seconds = interval_seconds
        self._sleep = sleep
        self.state = self._load_state()

    def pending_issues(self) -> list[Issue]:
        labels = [self.label] if self.label else None
        issues = self.issue_tracker.list_issues(labels=labels, state="open")
        return [
            issue for issue in issues
            if issue.number not in self.state.processed_issues
            and not SKIP_LABELS.intersection(issue.labels)
        ]

    def check_once(self) -> list[Task]:
        """Run every pending issue through the pipeline; return the final tasks."""
        try:
            issues = self.pending_issues()
        except IssueFlowError as e:
            logger.error("Failed to list issues: %s", e)
            return []

        if not issues:
            logger.info("No new issues found")
        results: list[Task] = []
        for issue in issues:
            task = self.process_issue(issue.number)
            if task is not None:
                results.append(task)

        self.state.last_check_time = _now()
        self._save_state()
        return results

    def process_issue(self, issue_number: int) -> Optional[Task]:
        self.state.processed_issues.append(issue_number)
        self._save_state()
        logger.info("Starting pipeline for issue #%d", issue_number)
        try:
            task = self.orchestrator.start_task(issue_number)
            task = self.orchestrator.run_pipeline(task.task_id)
        except IssueFlowError as e:
            logger.error("Pipeline for issue #%d failed to run: %s", issue_number, e)
            self.state.processed_issues.remove(issue_number)
            self._save_state()
            return None
        logger.info("Issue #%d finished with status %s", issue_number, task.status.value)
        return task

    def run(self, max_cycles: Optional[int] = None) -> None:
        """Poll forever, or for ``max_cycles`` checks."""
        cycles = 0
        logger.info("Watching for issues labeled %r every %.0fs", self.label, self.interval_seconds)
        while max_cycles is None or cycles < max_cycles:
            self.check_once()
            cycles += 1
            if max_cycles is None or cycles < max_cycles:
                self._sleep(self.interval_seconds)

    def _load_state(self) -> WatcherState:
        if not self.state_file.exists():
            return WatcherState()
        try:
            return WatcherState.model_validate_json(self.state_file.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Failed to load watcher state, starting fresh: %s", e)
            return WatcherState()

    def _save_state(self) -> None:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.state_file.write_text(
            json.dumps(self.state.model_dump(mode="json"), indent=2), encoding="utf-8",
        )
