"""GitHub REST client implementing the IssueTracker protocol."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional
from urllib.parse import quote

import httpx

from issueflow.core.config import GitHubConfig
from issueflow.core.exceptions import ConfigError, IssueTrackerError
from issueflow.core.models import Issue, IssueComment, PullRequest

logger = logging.getLogger("issueflow.integrations.github")


class GitHubClient:
    """Issues, labels, comments and pull requests for one repository."""

    def __init__(self, config: Optional[GitHubConfig] = None, token: Optional[str] = None):
        self.config = config or GitHubConfig()
        self.token = token or os.getenv("GITHUB_TOKEN", "")
        if not self.config.owner or not self.config.repo:
            raise ConfigError("github.owner and github.repo must be configured")
        self.repo_path = f"/repos/{self.config.owner}/{self.config.repo}"
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            headers = {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            self._client = httpx.Client(
                base_url=self.config.api_url.rstrip("/"),
                headers=headers,
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    # -------------------------------------------------------------------
    # Issues
    # -------------------------------------------------------------------

    def get_issue(self, issue_number: int) -> Issue:
        return _to_issue(self._request("GET", f"/issues/{issue_number}").json())

    def get_issue_with_comments(self, issue_number: int) -> tuple[Issue, list[IssueComment]]:
        issue = self.get_issue(issue_number)
        raw = self._request("GET", f"/issues/{issue_number}/comments", params={"per_page": 100}).json()
        comments = [
            IssueComment(
                user=(item.get("user") or {}).get("login", "unknown"),
                body=item.get("body") or "",
                created_at=item.get("created_at", ""),
            )
            for item in raw
        ]
        return issue, comments

    def list_issues(self, labels: Optional[list[str]] = None, state: str = "open") -> list[Issue]:
        params: dict[str, Any] = {"state": state, "per_page": 100}
        if labels:
            params["labels"] = ",".join(labels)
        raw = self._request("GET", "/issues", params=params).json()
        # The issues endpoint also returns pull requests
        return [_to_issue(item) for item in raw if "pull_request" not in item]

    def create_issue(self, title: str, body: str, labels: Optional[list[str]] = None) -> Issue:
        payload = {"title": title, "body": body, "labels": labels or []}
        issue = _to_issue(self._request("POST", "/issues", json=payload).json())
        logger.info("Created issue #%d: %s", issue.number, title)
        return issue

    def add_comment(self, issue_number: int, body: str) -> None:
        self._request("POST", f"/issues/{issue_number}/comments", json={"body": body})

    def add_label(self, issue_number: int, label: str) -> None:
        self._request("POST", f"/issues/{issue_number}/labels", json={"labels": [label]})

    def remove_label(self, issue_number: int, label: str) -> None:
        try:
            self._request("DELETE", f"/issues/{issue_number}/labels/{quote(label, safe='')}")
        except IssueTrackerError as e:
            if e.status_code != 404:
                raise

    def close_issue(self, issue_number: int, comment: Optional[str] = None) -> None:
        if comment:
            self.add_comment(issue_number, comment)
        self._request("PATCH", f"/issues/{issue_number}", json={"state": "closed"})
        logger.info("Closed issue #%d", issue_number)

    def reopen_issue(self, issue_number: int) -> None:
        self._request("PATCH", f"/issues/{issue_number}", json={"state": "open"})
        logger.info("Reopened issue #%d", issue_number)

    # -------------------------------------------------------------------
    # Pull requests
    # -------------------------------------------------------------------

    def create_pull_request(
        self, title: str, body: str, head: str, base: str, issue_number: Optional[int] = None,
    ) -> PullRequest:
        if issue_number is not None and f"#{issue_number}" not in body:
            body = f"{body}\n\nCloses #{issue_number}"
        data = self._request(
            "POST", "/pulls", json={"title": title, "body": body, "head": head, "base": base},
        ).json()
        logger.info("Created pull request #%d from %s", data["number"], head)
        return PullRequest(number=data["number"], url=data.get("html_url", ""))

    def link_pull_request(self, issue_number: int, pr_number: int, pr_url: str) -> None:
        self.add_comment(
            issue_number,
            f"\U0001f517 **Pull Request Created**\n\nPR #{pr_number}: {pr_url}",
        )

    # -------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = self.client.request(method, f"{self.repo_path}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise IssueTrackerError(f"GitHub {method} {path} failed: {e}") from e
        if resp.status_code >= 400:
            raise IssueTrackerError(
                f"GitHub {method} {path} returned {resp.status_code}: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        return resp

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None


def _to_issue(data: dict[str, Any]) -> Issue:
    return Issue(
        number=data["number"],
        title=data.get("title", ""),
        body=data.get("body") or "",
        url=data.get("html_url", ""),
        state=data.get("state", "open"),
        labels=[label["name"] if isinstance(label, dict) else str(label) for label in data.get("labels", [])],
    )


def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:300]
    message = data.get("message", "")
    details = "; ".join(
        err.get("message", "") for err in data.get("errors", []) if isinstance(err, dict)
    )
    return f"{message} ({details})" if details else message
