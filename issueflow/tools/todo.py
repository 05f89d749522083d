"""Cross-stage todo list for IssueFlow agents.

A TodoManager owns one TodoState. The orchestrator seeds it from the
persisted task before each stage and adopts whatever state the stage
returns, so the list travels through the pipeline by value.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Optional

from issueflow.core.models import (
    TodoItem,
    TodoPriority,
    TodoResult,
    TodoState,
    TodoStatus,
    TodoSummary,
)

logger = logging.getLogger("issueflow.tools.todo")

PRIORITY_ORDER = {TodoPriority.HIGH: 0, TodoPriority.MEDIUM: 1, TodoPriority.LOW: 2}

_MARKDOWN_STATUS_ORDER = {
    TodoStatus.IN_PROGRESS: 0,
    TodoStatus.PENDING: 1,
    TodoStatus.BLOCKED: 2,
    TodoStatus.COMPLETED: 3,
}
_STATUS_EMOJI = {
    TodoStatus.COMPLETED: "✅",
    TodoStatus.IN_PROGRESS: "\U0001f504",
    TodoStatus.PENDING: "⏳",
    TodoStatus.BLOCKED: "\U0001f6ab",
}
_PRIORITY_EMOJI = {
    TodoPriority.HIGH: "\U0001f534",
    TodoPriority.MEDIUM: "\U0001f7e1",
    TodoPriority.LOW: "\U0001f7e2",
}
_PROMPT_SYMBOL = {
    TodoStatus.COMPLETED: "[x]",
    TodoStatus.IN_PROGRESS: "[>]",
    TodoStatus.PENDING: "[ ]",
    TodoStatus.BLOCKED: "[!]",
}

# Function-calling schemas (OpenAI "tools" format) for the todo operations.
TODO_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "todo_add",
            "description": (
                "Add a new task to your todo list. Use this to break down complex "
                "work into trackable steps. Returns the created todo item with its ID."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "content": {"type": "string", "description": "Description of the task to add"},
                    "priority": {
                        "type": "string",
                        "enum": ["low", "medium", "high"],
                        "description": "Task priority. Defaults to medium.",
                    },
                },
                "required": ["content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "todo_update",
            "description": "Update the status of an existing todo item.",
            "parameters": {
                "type": "object",
                "properties": {
                    "id": {"type": "string", "description": "The ID of the todo item to update"},
                    "status": {
                        "type": "string",
                        "enum": ["pending", "in_progress", "completed", "blocked"],
                    },
                    "blocked_reason": {
                        "type": "string",
                        "description": "If status is blocked, explain why",
                    },
                },
                "required": ["id", "status"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "todo_list",
            "description": "List current todo items, highest priority first.",
            "parameters": {
                "type": "object",
                "properties": {
                    "filter": {
                        "type": "string",
                        "enum": ["all", "pending", "in_progress", "completed", "blocked"],
                    },
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "todo_remove",
            "description": "Remove a todo item. Prefer marking it completed instead.",
            "parameters": {
                "type": "object",
                "properties": {"id": {"type": "string"}},
                "required": ["id"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "todo_clear_completed",
            "description": "Remove all completed todo items from the list.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
]

TODO_TOOL_NAMES = frozenset(tool["function"]["name"] for tool in TODO_TOOLS)


class TodoManager:
    """In-memory todo list with the operations exposed to agents as tools."""

    def __init__(self, task_id: str, issue_number: Optional[int] = None):
        self._state = TodoState(task_id=task_id, issue_number=issue_number)

    def add(
        self,
        content: str,
        priority: TodoPriority | str = TodoPriority.MEDIUM,
        agent_name: Optional[str] = None,
        stage_index: Optional[int] = None,
    ) -> TodoResult:
        if not isinstance(content, str):
            return TodoResult(success=False, error="Todo content must be a string")
        if not content.strip():
            return TodoResult(success=False, error="Todo content must not be empty")
        try:
            priority = TodoPriority(priority)
        except ValueError:
            return TodoResult(success=False, error=f"Invalid priority: {priority}")

        todo = TodoItem(
            content=content.strip(),
            priority=priority,
            agent_name=agent_name,
            stage_index=stage_index,
        )
        self._state.todos.append(todo)
        self._state.updated_at = todo.created_at
        logger.info("Todo added: %s (%s)", todo.id, todo.content)

        return TodoResult(
            success=True,
            message=f'Added todo: "{todo.content}" (ID: {todo.id})',
            todo=todo.model_copy(),
            summary=self.summary(),
        )

    def update(
        self,
        todo_id: str,
        status: TodoStatus | str,
        blocked_reason: Optional[str] = None,
    ) -> TodoResult:
        todo = self._find(todo_id)
        if todo is None:
            return TodoResult(success=False, error=f"Todo not found with ID: {todo_id}")
        try:
            status = TodoStatus(status)
        except ValueError:
            return TodoResult(success=False, error=f"Invalid status: {status}")

        now = datetime.now(UTC)
        old_status = todo.status
        todo.status = status
        todo.updated_at = now
        if status == TodoStatus.COMPLETED:
            todo.completed_at = now
        if status == TodoStatus.BLOCKED and blocked_reason:
            todo.blocked_reason = blocked_reason
        self._state.updated_at = now

        logger.info("Todo %s: %s -> %s", todo.id, old_status.value, status.value)
        return TodoResult(
            success=True,
            message=f'Updated todo "{todo.content}": {old_status.value} → {status.value}',
            todo=todo.model_copy(),
            summary=self.summary(),
        )

    def list(self, status_filter: Optional[TodoStatus | str] = None) -> TodoResult:
        """Return todos ordered by priority (high first), then creation time."""
        todos = list(self._state.todos)
        label = ""
        if status_filter and status_filter != "all":
            try:
                wanted = TodoStatus(status_filter)
            except ValueError:
                return TodoResult(success=False, error=f"Invalid filter: {status_filter}")
            todos = [t for t in todos if t.status == wanted]
            label = f' with status "{wanted.value}"'

        todos.sort(key=lambda t: (PRIORITY_ORDER[t.priority], t.created_at))
        return TodoResult(
            success=True,
            message=f"Found {len(todos)} todo(s){label}",
            todos=[t.model_copy() for t in todos],
            summary=self.summary(),
        )

    def remove(self, todo_id: str) -> TodoResult:
        todo = self._find(todo_id)
        if todo is None:
            return TodoResult(success=False, error=f"Todo not found with ID: {todo_id}")

        self._state.todos.remove(todo)
        self._state.updated_at = datetime.now(UTC)
        logger.info("Todo removed: %s", todo.id)
        return TodoResult(
            success=True,
            message=f'Removed todo: "{todo.content}"',
            todo=todo,
            summary=self.summary(),
        )

    def clear_completed(self) -> TodoResult:
        before = len(self._state.todos)
        self._state.todos = [t for t in self._state.todos if t.status != TodoStatus.COMPLETED]
        removed = before - len(self._state.todos)
        self._state.updated_at = datetime.now(UTC)
        logger.info("Cleared %d completed todo(s)", removed)
        return TodoResult(
            success=True,
            message=f"Cleared {removed} completed todo(s)",
            summary=self.summary(),
        )

    def summary(self) -> TodoSummary:
        todos = self._state.todos
        return TodoSummary(
            total=len(todos),
            pending=sum(1 for t in todos if t.status == TodoStatus.PENDING),
            in_progress=sum(1 for t in todos if t.status == TodoStatus.IN_PROGRESS),
            completed=sum(1 for t in todos if t.status == TodoStatus.COMPLETED),
            blocked=sum(1 for t in todos if t.status == TodoStatus.BLOCKED),
        )

    def get_state(self) -> TodoState:
        """Return a deep copy of the state, safe to hand to the next stage."""
        return self._state.model_copy(deep=True)

    def load_state(self, state: TodoState) -> None:
        self._state = state.model_copy(deep=True)
        logger.debug("Loaded todo state for %s (%d items)", state.task_id, len(state.todos))

    # -------------------------------------------------------------------
    # Rendering
    # -------------------------------------------------------------------

    def to_markdown(self) -> str:
        """Render progress as markdown for issue comments."""
        summary = self.summary()
        if summary.total == 0:
            return "**No tasks tracked**"

        lines = [
            "## Task Progress",
            "",
            "| Status | Count |",
            "|--------|-------|",
            f"| Completed | {summary.completed}/{summary.total} |",
            f"| In Progress | {summary.in_progress} |",
            f"| Pending | {summary.pending} |",
            f"| Blocked | {summary.blocked} |",
            "",
            "### Tasks",
            "",
        ]
        ordered = sorted(self._state.todos, key=lambda t: _MARKDOWN_STATUS_ORDER[t.status])
        for todo in ordered:
            blocked = f" _(Blocked: {todo.blocked_reason})_" if todo.blocked_reason else ""
            agent = f" [{todo.agent_name}]" if todo.agent_name else ""
            lines.append(
                f"- {_STATUS_EMOJI[todo.status]} {_PRIORITY_EMOJI[todo.priority]} "
                f"{todo.content}{blocked}{agent}"
            )
        return "\n".join(lines) + "\n"

    def to_prompt(self) -> str:
        """Render the list as plain text for injection into an agent prompt."""
        summary = self.summary()
        if summary.total == 0:
            return "No existing tasks. Use todo_add to create tasks as you work."

        progress = f"Progress: {summary.completed}/{summary.total} completed"
        if summary.in_progress:
            progress += f", {summary.in_progress} in progress"
        if summary.blocked:
            progress += f", {summary.blocked} blocked"

        lines = ["CURRENT TODO LIST:", progress, ""]
        for todo in self._state.todos:
            priority = ""
            if todo.priority == TodoPriority.HIGH:
                priority = " (HIGH)"
            elif todo.priority == TodoPriority.LOW:
                priority = " (low)"
            blocked = f" - BLOCKED: {todo.blocked_reason}" if todo.blocked_reason else ""
            lines.append(f"{_PROMPT_SYMBOL[todo.status]} {todo.id}: {todo.content}{priority}{blocked}")
        lines.append("")
        lines.append("Use todo_update to mark tasks as you complete them.")
        return "\n".join(lines)

    # -------------------------------------------------------------------
    # Tool dispatch
    # -------------------------------------------------------------------

    def execute(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        agent_name: Optional[str] = None,
        stage_index: Optional[int] = None,
    ) -> TodoResult:
        """Run one todo tool call by name."""
        if tool_name == "todo_add":
            return self.add(
                tool_input.get("content", ""),
                tool_input.get("priority") or TodoPriority.MEDIUM,
                agent_name=agent_name,
                stage_index=stage_index,
            )
        if tool_name == "todo_update":
            return self.update(
                tool_input.get("id", ""),
                tool_input.get("status", ""),
                _text(tool_input.get("blocked_reason") or tool_input.get("blockedReason")),
            )
        if tool_name == "todo_list":
            return self.list(tool_input.get("filter"))
        if tool_name == "todo_remove":
            return self.remove(tool_input.get("id", ""))
        if tool_name == "todo_clear_completed":
            return self.clear_completed()
        return TodoResult(success=False, error=f"Unknown todo tool: {tool_name}")

    def _find(self, todo_id: str) -> Optional[TodoItem]:
        for todo in self._state.todos:
            if todo.id == todo_id:
                return todo
        return None


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None
