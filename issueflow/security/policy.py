"""Path policy for the tool sandbox.

Provides:
- Absolute path rejection (POSIX and Windows forms)
- Parent-directory segment rejection
- Base directory confinement checks for resolved paths
- A read size ceiling
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath

from issueflow.core.exceptions import SandboxViolationError

DEFAULT_MAX_READ_BYTES = 10 * 1024 * 1024

_SEGMENT_SPLIT = re.compile(r"[\\/]+")


@dataclass
class SandboxPolicy:
    """Validation rules for agent-chosen file paths.

    Checks run in a fixed order: absolute, parent segment, confinement.
    The first two are purely lexical and never touch the filesystem.
    """

    base_dir: Path = field(default_factory=lambda: Path(".").resolve())
    max_read_bytes: int = DEFAULT_MAX_READ_BYTES

    def __post_init__(self) -> None:
        self.base_dir = Path(self.base_dir).resolve()

    def is_path_allowed(self, path: str) -> bool:
        """Lexical pre-check before any filesystem operation."""
        try:
            self.check_lexical(path)
            return True
        except SandboxViolationError:
            return False

    def check_lexical(self, path: str) -> None:
        if not isinstance(path, str) or not path.strip():
            raise SandboxViolationError(str(path), "Path must be a non-empty relative path")
        if "\x00" in path:
            raise SandboxViolationError(path, "Path contains a NUL byte")
        if _is_absolute(path):
            raise SandboxViolationError(
                path,
                'Absolute paths are not allowed. Use paths relative to the project root (e.g. "src/app.py")',
            )
        if _has_parent_segment(path):
            raise SandboxViolationError(path, "Path traversal (..) is not allowed")

    def is_resolved_path_allowed(self, resolved: Path) -> bool:
        return _starts_with_path(resolved, self.base_dir)

    def resolve(self, path: str) -> Path:
        """Run every path check and return the resolved target under base_dir."""
        self.check_lexical(path)
        resolved = (self.base_dir / path).resolve()
        if not self.is_resolved_path_allowed(resolved):
            raise SandboxViolationError(path, "Path must be within the project directory")
        return resolved

    def check_read_size(self, path: str, resolved: Path) -> None:
        size = resolved.stat().st_size
        if size > self.max_read_bytes:
            raise SandboxViolationError(
                path,
                f"File too large ({size / 1024 / 1024:.2f}MB). "
                f"Maximum size is {self.max_read_bytes / 1024 / 1024:.0f}MB.",
            )


def _is_absolute(path: str) -> bool:
    if PurePosixPath(path).is_absolute():
        return True
    win = PureWindowsPath(path)
    # "C:foo", "\\server\share" and "\foo" all anchor outside the base dir
    return bool(win.drive or win.root)


def _has_parent_segment(path: str) -> bool:
    lowered = path.lower()
    if "..%2f" in lowered or "%2f.." in lowered or "..%5c" in lowered:
        return True
    return any(segment == ".." for segment in _SEGMENT_SPLIT.split(path))


def _starts_with_path(path: Path, prefix: Path) -> bool:
    try:
        path.relative_to(prefix)
        return True
    except ValueError:
        return False
