"""Git operations for IssueFlow.

GitClient is the production VersionControl collaborator: it creates the
per-issue branch, detects changes left by the mutating stage, commits
them and pushes the branch. All commands use list-form arguments.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from issueflow.core.exceptions import ToolError, VersionControlError
from issueflow.tools.shell import ShellResult, run_command

logger = logging.getLogger("issueflow.tools.git_ops")


class GitClient:
    """Local git checkout driven through the git CLI."""

    def __init__(self, repo_path: str | Path = ".", remote: str = "origin", timeout: int = 300):
        self.repo_path = Path(repo_path)
        self.remote = remote
        self.timeout = timeout

    def create_branch(self, branch_name: str, from_branch: str = "main") -> None:
        """Check out a fresh branch from the latest base branch.

        An existing local branch with the same name is checked out as-is,
        so re-running an issue reuses its branch.

        Raises:
            VersionControlError: If checkout or branch creation fails.
        """
        logger.info("Creating branch %s from %s", branch_name, from_branch)
        if self.branch_exists(branch_name):
            self._git("checkout", branch_name)
            logger.info("Branch %s already exists, checked out", branch_name)
            return

        self._git("checkout", from_branch)
        pull = self._run("pull", self.remote, from_branch)
        if not pull.success:
            # A checkout without a reachable remote can still branch locally
            logger.warning("git pull %s %s failed: %s", self.remote, from_branch, pull.output)
        self._git("checkout", "-b", branch_name)
        logger.info("Branch %s created and checked out", branch_name)

    def branch_exists(self, branch_name: str) -> bool:
        result = self._run("rev-parse", "--verify", "--quiet", f"refs/heads/{branch_name}")
        return result.success

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def has_uncommitted_changes(self) -> bool:
        status = self._git("status", "--porcelain")
        return bool(status.stdout.strip())

    def commit(self, message: str, files: Optional[list[str]] = None) -> str:
        """Stage files (all changes when None) and commit.

        Returns:
            The new commit hash, or "" when there was nothing to commit.
        """
        if files:
            self._git("add", "--", *files)
        else:
            self._git("add", "-A")

        result = self._run("commit", "-m", message)
        if not result.success:
            if "nothing to commit" in result.stdout:
                logger.info("Nothing to commit")
                return ""
            raise VersionControlError(f"git commit failed: {result.output}")

        commit_hash = self._git("rev-parse", "HEAD").stdout.strip()
        logger.info("Committed %s", commit_hash[:8])
        return commit_hash

    def push(self, branch_name: str) -> None:
        logger.info("Pushing %s to %s", branch_name, self.remote)
        self._git("push", "--set-upstream", self.remote, branch_name)
        logger.info("Pushed %s", branch_name)

    def get_diff(self, staged: bool = False) -> str:
        args = ["diff", "--staged"] if staged else ["diff"]
        return self._run(*args).stdout

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def _run(self, *args: str) -> ShellResult:
        try:
            return run_command(["git", *args], cwd=self.repo_path, timeout=self.timeout)
        except ToolError as e:
            raise VersionControlError(f"git {args[0]} could not run: {e}") from e

    def _git(self, *args: str) -> ShellResult:
        result = self._run(*args)
        if not result.success:
            raise VersionControlError(f"git {' '.join(args)} failed: {result.output}")
        return result
