"""Wiki checkout implementing the KnowledgeBase protocol.

Pages are markdown files in a local git clone of the project wiki. Page
names come from agent output, so every name goes through the same path
policy as the tool sandbox before it touches the filesystem.
"""

from __future__ import annotations

import logging
from pathlib import Path

from issueflow.core.exceptions import KnowledgeBaseError, SandboxViolationError, VersionControlError
from issueflow.security.policy import SandboxPolicy
from issueflow.tools.git_ops import GitClient

logger = logging.getLogger("issueflow.integrations.wiki")


class WikiClient:
    """Reads and edits wiki pages, then commits and pushes the checkout."""

    def __init__(self, local_path: str | Path, remote: str = "origin"):
        self.local_path = Path(local_path)
        if not self.local_path.is_dir():
            raise KnowledgeBaseError(f"Wiki checkout not found: {self.local_path}")
        self.policy = SandboxPolicy(base_dir=self.local_path)
        self.git = GitClient(self.local_path, remote=remote)

    def get_page(self, page: str) -> str:
        path = self._page_path(page)
        if not path.exists():
            logger.warning("Wiki page not found: %s", page)
            return ""
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise KnowledgeBaseError(f"Failed to read wiki page {page}: {e}") from e

    def update_page(self, page: str, content: str) -> None:
        self._write(page, content)
        logger.info("Updated wiki page %s (%d chars)", page, len(content))

    def append_to_page(self, page: str, content: str) -> None:
        existing = self.get_page(page)
        self._write(page, f"{existing}\n{content}" if existing else content)
        logger.info("Appended to wiki page %s", page)

    def create_page(self, page: str, content: str) -> None:
        if self._page_path(page).exists():
            logger.warning("Wiki page %s already exists, updating instead", page)
        self._write(page, content)

    def commit(self, message: str) -> None:
        try:
            if not self.git.has_uncommitted_changes():
                logger.info("No wiki changes to commit")
                return
            self.git.commit(message)
        except VersionControlError as e:
            raise KnowledgeBaseError(f"Failed to commit wiki changes: {e}") from e

    def push(self) -> None:
        try:
            self.git.push(self.git.current_branch())
        except VersionControlError as e:
            raise KnowledgeBaseError(f"Failed to push wiki: {e}") from e

    def _page_path(self, page: str) -> Path:
        name = page if page.endswith(".md") else f"{page}.md"
        try:
            return self.policy.resolve(name)
        except SandboxViolationError as e:
            raise KnowledgeBaseError(f"Invalid wiki page name {page!r}: {e.reason}") from e

    def _write(self, page: str, content: str) -> None:
        path = self._page_path(page)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise KnowledgeBaseError(f"Failed to write wiki page {page}: {e}") from e
