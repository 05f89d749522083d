"""Tool execution sandbox for the file-mutating stage.

Wraps the four file tools (read, write, list, exists) and the todo tools
behind a single execute() entry point. Every path is checked by the
SandboxPolicy before the filesystem is touched, and every call, accepted
or rejected, is appended to the audit log.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from issueflow.core.exceptions import SandboxViolationError
from issueflow.core.models import AuditEntry, TodoState, ToolResult
from issueflow.security.policy import DEFAULT_MAX_READ_BYTES, SandboxPolicy
from issueflow.tools.todo import TODO_TOOL_NAMES, TODO_TOOLS, TodoManager

logger = logging.getLogger("issueflow.tools.sandbox")

_PATH_HINT = "Path relative to project root (e.g. \"src/app.py\"). No absolute paths or '..'."

FILE_TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read the full contents of a file. Examine existing code before changing it.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string", "description": _PATH_HINT}},
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Write content to a file, replacing it entirely. "
                "Parent directories are created automatically."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": _PATH_HINT},
                    "content": {"type": "string", "description": "Complete file content to write"},
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_directory",
            "description": "List the entries of a directory. Use \".\" for the project root.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string", "description": _PATH_HINT}},
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "file_exists",
            "description": "Check whether a file or directory exists at the given path.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string", "description": _PATH_HINT}},
                "required": ["path"],
            },
        },
    },
]

FILE_TOOL_NAMES = frozenset(tool["function"]["name"] for tool in FILE_TOOLS)


class ToolSandbox:
    """Capability-scoped file access confined to one base directory."""

    def __init__(
        self,
        base_dir: str | Path,
        max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
        audit_log_path: Optional[str | Path] = None,
        todo_manager: Optional[TodoManager] = None,
        agent_name: Optional[str] = None,
        stage_index: Optional[int] = None,
    ):
        self.policy = SandboxPolicy(base_dir=Path(base_dir), max_read_bytes=max_read_bytes)
        self.audit_log_path = Path(audit_log_path) if audit_log_path else None
        self.todo_manager = todo_manager or TodoManager(task_id="default")
        self.agent_name = agent_name
        self.stage_index = stage_index
        self.audit_log: list[AuditEntry] = []

    @property
    def base_dir(self) -> Path:
        return self.policy.base_dir

    @property
    def tool_schemas(self) -> list[dict[str, Any]]:
        return FILE_TOOLS + TODO_TOOLS

    def load_todo_state(self, state: TodoState) -> None:
        self.todo_manager.load_state(state)

    def get_todo_state(self) -> TodoState:
        return self.todo_manager.get_state()

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------

    def execute(self, tool_name: str, tool_input: dict[str, Any]) -> ToolResult:
        """Run one tool call by name. Never raises for agent-caused errors."""
        logger.info("Executing tool %s", tool_name)

        if not isinstance(tool_input, dict):
            return self._refuse(tool_name, "", "Tool input must be a JSON object")

        if tool_name in TODO_TOOL_NAMES:
            return self._run_todo_tool(tool_name, tool_input)
        if tool_name not in FILE_TOOL_NAMES:
            return self._refuse(tool_name, "", f"Unknown tool: {tool_name}")

        path = tool_input.get("path", "")
        if tool_name == "list_directory" and not path:
            path = "."
        if not isinstance(path, str):
            return self._refuse(tool_name, repr(path), "path must be a string")

        if tool_name == "read_file":
            return self.read_file(path)
        if tool_name == "write_file":
            content = tool_input.get("content", "")
            if not isinstance(content, str):
                return self._refuse(tool_name, path, "content must be a string")
            return self.write_file(path, content)
        if tool_name == "list_directory":
            return self.list_directory(path)
        return self.file_exists(path)

    def _run_todo_tool(self, tool_name: str, tool_input: dict[str, Any]) -> ToolResult:
        result = self.todo_manager.execute(
            tool_name, tool_input, agent_name=self.agent_name, stage_index=self.stage_index,
        )
        self._record(tool_name, "", "accepted" if result.success else "error", detail=result.error)

        data: dict[str, Any] = {}
        if result.todo is not None:
            data["todo"] = result.todo.model_dump(mode="json")
        if result.todos is not None:
            data["todos"] = [t.model_dump(mode="json") for t in result.todos]
        if result.summary is not None:
            data["summary"] = result.summary.model_dump()
        return ToolResult(
            success=result.success, message=result.message or None, error=result.error, data=data,
        )

    # -------------------------------------------------------------------
    # File tools
    # -------------------------------------------------------------------

    def read_file(self, path: str) -> ToolResult:
        try:
            resolved = self.policy.resolve(path)
            if not resolved.exists():
                return self._fail("read_file", path, f"File not found: {path}")
            if not resolved.is_file():
                return self._fail("read_file", path, f"Path is a directory, not a file: {path}")
            self.policy.check_read_size(path, resolved)
            content = resolved.read_text(encoding="utf-8")
        except SandboxViolationError as e:
            return self._reject("read_file", path, e)
        except (OSError, UnicodeDecodeError) as e:
            return self._fail("read_file", path, f"Failed to read file: {e}")

        self._record("read_file", path, "accepted")
        return ToolResult(
            success=True,
            content=content,
            message=f"Read {len(content)} characters from {path}",
        )

    def write_file(self, path: str, content: str) -> ToolResult:
        try:
            resolved = self.policy.resolve(path)
            if (self.base_dir / path).is_symlink():
                return self._fail("write_file", path, f"Refusing to write through symlink: {path}")
            resolved.parent.mkdir(parents=True, exist_ok=True)
            resolved.write_text(content, encoding="utf-8")
        except SandboxViolationError as e:
            return self._reject("write_file", path, e)
        except OSError as e:
            return self._fail("write_file", path, f"Failed to write file: {e}")

        self._record("write_file", path, "accepted", detail=f"{len(content)} chars")
        return ToolResult(
            success=True,
            message=f"Successfully wrote {len(content)} characters to {path}",
        )

    def list_directory(self, path: str) -> ToolResult:
        try:
            resolved = self.policy.resolve(path)
            if not resolved.exists():
                return self._fail("list_directory", path, f"Directory not found: {path}")
            if not resolved.is_dir():
                return self._fail("list_directory", path, f"Path is not a directory: {path}")
            items = sorted(entry.name for entry in resolved.iterdir())
        except SandboxViolationError as e:
            return self._reject("list_directory", path, e)
        except OSError as e:
            return self._fail("list_directory", path, f"Failed to list directory: {e}")

        self._record("list_directory", path, "accepted")
        return ToolResult(
            success=True,
            message=f"Found {len(items)} items in {path}",
            data={"items": items},
        )

    def file_exists(self, path: str) -> ToolResult:
        try:
            resolved = self.policy.resolve(path)
        except SandboxViolationError as e:
            return self._reject("file_exists", path, e)

        exists = resolved.exists()
        self._record("file_exists", path, "accepted")
        return ToolResult(
            success=True,
            message=f"File {'exists' if exists else 'does not exist'}: {path}",
            data={"exists": exists},
        )

    # -------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------

    def _reject(self, operation: str, path: str, error: SandboxViolationError) -> ToolResult:
        logger.warning("Rejected %s on %r: %s", operation, path, error.reason)
        self._record(operation, path, "rejected", detail=error.reason)
        return ToolResult(success=False, error=error.reason)

    def _refuse(self, operation: str, path: str, message: str) -> ToolResult:
        logger.warning("Refused %s: %s", operation, message)
        self._record(operation, path, "rejected", detail=message)
        return ToolResult(success=False, error=message)

    def _fail(self, operation: str, path: str, message: str) -> ToolResult:
        logger.warning("%s failed on %r: %s", operation, path, message)
        self._record(operation, path, "error", detail=message)
        return ToolResult(success=False, error=message)

    def _record(self, operation: str, path: str, outcome: str, detail: Optional[str] = None) -> None:
        entry = AuditEntry(operation=operation, path=str(path), outcome=outcome, detail=detail)
        self.audit_log.append(entry)
        if self.audit_log_path is None:
            return
        try:
            self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.audit_log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.model_dump(mode="json")) + "\n")
        except OSError as e:
            logger.error("Failed to append audit entry to %s: %s", self.audit_log_path, e)
