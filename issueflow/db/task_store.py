"""File-backed task state store for IssueFlow.

One directory per task under the configured tasks dir:

    <tasks_dir>/<task_id>/state.json      full Task record
    <tasks_dir>/<task_id>/<artifact>      stage artifacts (markdown reports)

Every write goes to a sibling temp file first and is swapped in with
os.replace, so a crash mid-write leaves the previous record intact.
A single writer per task is assumed; there is no locking.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from issueflow.core.exceptions import TaskNotFoundError, TaskStoreError
from issueflow.core.models import Task

logger = logging.getLogger("issueflow.db.task_store")

STATE_FILENAME = "state.json"


class TaskStore:
    """Persists Task records and their artifacts on the local filesystem."""

    def __init__(self, tasks_dir: str | Path):
        self.tasks_dir = Path(tasks_dir)

    # -------------------------------------------------------------------
    # Task records
    # -------------------------------------------------------------------

    def create(self, task: Task) -> Task:
        """Persist a new task, replacing any previous record with the same id."""
        self.task_dir(task.task_id).mkdir(parents=True, exist_ok=True)
        self.save(task)
        logger.info("Created task %s for issue #%d", task.task_id, task.issue_number)
        return task

    def save(self, task: Task) -> None:
        task.touch()
        payload = task.model_dump_json(indent=2)
        self._atomic_write(self._state_path(task.task_id), payload)
        logger.debug(
            "Saved %s (status=%s, stage=%d)",
            task.task_id, task.status.value, task.current_stage,
        )

    def load(self, task_id: str) -> Task:
        path = self._state_path(task_id)
        if not path.exists():
            raise TaskNotFoundError(task_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise TaskStoreError(f"Failed to read {path}: {e}") from e
        try:
            return Task.model_validate_json(raw)
        except ValidationError as e:
            raise TaskStoreError(f"Corrupt task state for {task_id}: {e}") from e

    def exists(self, task_id: str) -> bool:
        return self._state_path(task_id).exists()

    def list(self) -> list[str]:
        """Return the ids of all persisted tasks, sorted."""
        if not self.tasks_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.tasks_dir.iterdir()
            if entry.is_dir() and (entry / STATE_FILENAME).exists()
        )

    # -------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------

    def save_artifact(self, task_id: str, name: str, content: str) -> Path:
        path = self._artifact_path(task_id, name)
        self._atomic_write(path, content)
        logger.debug("Saved artifact %s/%s (%d chars)", task_id, name, len(content))
        return path

    def load_artifact(self, task_id: str, name: str) -> Optional[str]:
        path = self._artifact_path(task_id, name)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def append_artifact(self, task_id: str, name: str, content: str) -> Path:
        existing = self.load_artifact(task_id, name) or ""
        return self.save_artifact(task_id, name, existing + content)

    # -------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------

    def task_dir(self, task_id: str) -> Path:
        if not task_id or "/" in task_id or "\\" in task_id or task_id in (".", ".."):
            raise TaskStoreError(f"Invalid task id: {task_id!r}")
        return self.tasks_dir / task_id

    def _state_path(self, task_id: str) -> Path:
        return self.task_dir(task_id) / STATE_FILENAME

    def _artifact_path(self, task_id: str, name: str) -> Path:
        if not name or Path(name).name != name or name == STATE_FILENAME:
            raise TaskStoreError(f"Invalid artifact name: {name!r}")
        return self.task_dir(task_id) / name

    @staticmethod
    def _atomic_write(path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise TaskStoreError(f"Failed to write {path}: {e}") from e
