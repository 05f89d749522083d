"""Argument-list subprocess runner used by the git and wiki clients.

Commands are exec'd directly, never through a shell, so issue titles and
branch names can't inject anything.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from issueflow.core.exceptions import ShellTimeoutError, ToolError

logger = logging.getLogger("issueflow.tools.shell")

DEFAULT_TIMEOUT = 120  # seconds
MAX_OUTPUT_BYTES = 1_048_576
_TRUNCATED = "\n... [output truncated]"


@dataclass
class ShellResult:
    command: str
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.return_code == 0

    @property
    def output(self) -> str:
        """Both streams, stripped and joined. Used in error messages."""
        return "\n".join(filter(None, (self.stdout.strip(), self.stderr.strip())))


def run_command(
    args: list[str],
    cwd: Optional[str | Path] = None,
    timeout: int = DEFAULT_TIMEOUT,
    env: Optional[dict[str, str]] = None,
) -> ShellResult:
    """Run ``args`` and capture its output.

    A non-zero exit is reported through ShellResult.success; only a
    timeout or a program that cannot be started raises.
    """
    if not args:
        raise ToolError("Empty command")

    command = " ".join(args)
    logger.debug("Running %s in %s", command, cwd or ".")
    try:
        proc = subprocess.run(
            args,
            cwd=cwd,
            env={**os.environ, **(env or {})},
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        logger.warning("Timed out after %ds: %s", timeout, command)
        raise ShellTimeoutError(f"Command timed out after {timeout}s: {command}") from e
    except FileNotFoundError as e:
        raise ToolError(f"Command not found: {args[0]}") from e
    except OSError as e:
        raise ToolError(f"Failed to run {args[0]}: {e}") from e

    logger.debug("%s exited with %d", args[0], proc.returncode)
    return ShellResult(
        command=command,
        return_code=proc.returncode,
        stdout=_cap(proc.stdout),
        stderr=_cap(proc.stderr),
    )


def _cap(text: str) -> str:
    raw = text.encode("utf-8")
    if len(raw) <= MAX_OUTPUT_BYTES:
        return text
    return raw[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore") + _TRUNCATED
