"""Task state machine for IssueFlow.

Manages legal status transitions for tasks and enforces the state graph.
Tasks flow: PENDING → IN_PROGRESS → PENDING (next stage) → ... → COMPLETED,
with halts (AWAITING_APPROVAL, AWAITING_CLOSURE_APPROVAL) that only a
human action leaves, and DECOMPOSED/FAILED as terminal states.
"""

from __future__ import annotations

import logging
from typing import Optional

from issueflow.core.exceptions import InvalidTransitionError
from issueflow.core.models import Task, TaskStatus
from issueflow.db.task_store import TaskStore

logger = logging.getLogger("issueflow.orchestrator.task_router")

# Legal state transitions: each key maps to the set of states it can move to
VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS},
    TaskStatus.IN_PROGRESS: {
        TaskStatus.IN_PROGRESS,  # stage retried after healing
        TaskStatus.PENDING,
        TaskStatus.AWAITING_APPROVAL,
        TaskStatus.AWAITING_CLOSURE_APPROVAL,
        TaskStatus.DECOMPOSED,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
    },
    TaskStatus.AWAITING_APPROVAL: {TaskStatus.PENDING, TaskStatus.COMPLETED},
    TaskStatus.AWAITING_CLOSURE_APPROVAL: {TaskStatus.PENDING, TaskStatus.COMPLETED},
    TaskStatus.DECOMPOSED: set(),  # Terminal, children carry the work
    TaskStatus.COMPLETED: set(),   # Terminal
    TaskStatus.FAILED: set(),      # Terminal, requires a fresh start_task
}

RUNNABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.IN_PROGRESS})


class TaskRouter:
    """Manages task status transitions with validation.

    All status changes go through this router to ensure legal transitions,
    logging, and persistence.
    """

    def __init__(self, store: TaskStore):
        self.store = store

    def transition(self, task: Task, new_status: TaskStatus, reason: Optional[str] = None) -> Task:
        """Move a task to a new status and persist it.

        Raises:
            InvalidTransitionError: If transition is not allowed.
        """
        if not self.can_transition(task.status, new_status):
            raise InvalidTransitionError(
                f"Invalid transition: {task.status.value} → {new_status.value} "
                f"for task {task.task_id}"
            )

        old_status = task.status
        task.status = new_status
        self.store.save(task)

        if old_status != new_status:
            log_msg = f"Task {task.task_id}: {old_status.value} → {new_status.value}"
            if reason:
                log_msg += f" ({reason})"
            logger.info(log_msg)

        return task

    def can_transition(self, from_status: TaskStatus, to_status: TaskStatus) -> bool:
        """Check if a transition is legal."""
        return to_status in VALID_TRANSITIONS.get(from_status, set())

    def is_runnable(self, task: Task) -> bool:
        return task.status in RUNNABLE_STATUSES

    def mark_failed(self, task: Task, error: str) -> Task:
        """Convenience method to mark a task FAILED with its error."""
        task.error = error
        return self.transition(task, TaskStatus.FAILED, reason=error)

    def mark_completed(self, task: Task, reason: str = "all stages completed") -> Task:
        return self.transition(task, TaskStatus.COMPLETED, reason=reason)

    def advance(self, task: Task, stage_count: int) -> Task:
        """Move past the current stage: next stage PENDING, or COMPLETED after the last."""
        task.current_stage += 1
        if task.current_stage >= stage_count:
            return self.mark_completed(task)
        return self.transition(task, TaskStatus.PENDING, reason=f"next stage {task.current_stage}")

    def get_transition_history_summary(self, task: Task) -> str:
        """Build a summary of the task's current state for logging."""
        return (
            f"Task {task.task_id}: "
            f"status={task.status.value}, "
            f"stage={task.current_stage}/{len(task.stages)}, "
            f"heal_attempts={sum(task.heal_attempts.values())}"
        )
