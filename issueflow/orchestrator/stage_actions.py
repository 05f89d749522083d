"""Side effects run after a stage completes successfully.

Which effect runs is declared on the StageDefinition (``action``), never
inferred from the stage index. Failure policy differs per action:

- commit_and_open_pr: VCS and tracker errors propagate and fail the task.
- deploy_staging: errors are logged and reported, the pipeline continues.
- deploy_production: errors reopen the issue and raise DeploymentError.
- update_knowledge_base: errors are logged, the pipeline continues.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from issueflow.core.exceptions import DeploymentError, IntegrationError, ToolError
from issueflow.core.models import (
    Deployment,
    DeploymentRecord,
    DeploymentState,
    HealthReport,
    Task,
)
from issueflow.db.task_store import TaskStore
from issueflow.integrations.protocols import (
    DeploymentPlatform,
    IssueTracker,
    KnowledgeBase,
    VersionControl,
)
from issueflow.llm.response_parser import apply_section_update, parse_knowledge_updates
from issueflow.orchestrator.pipeline import StageAction, StageDefinition

logger = logging.getLogger("issueflow.orchestrator.stage_actions")

HALT_MARKERS = ("implementation halted", "cannot implement")
PR_EXISTS_MARKER = "pull request already exists"


class StageActionRunner:
    """Executes the post-stage action named by a StageDefinition."""

    def __init__(
        self,
        store: TaskStore,
        issue_tracker: IssueTracker,
        version_control: VersionControl,
        deployment_platform: Optional[DeploymentPlatform] = None,
        knowledge_base: Optional[KnowledgeBase] = None,
        base_branch: str = "main",
        deployment_timeout_seconds: float = 600,
        poll_interval_seconds: float = 5.0,
    ):
        self.store = store
        self.issue_tracker = issue_tracker
        self.version_control = version_control
        self.deployment_platform = deployment_platform
        self.knowledge_base = knowledge_base
        self.base_branch = base_branch
        self.deployment_timeout_seconds = deployment_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, task: Task, stage: StageDefinition, output: str) -> None:
        """Run ``stage.action`` for a just-completed stage; no-op if none."""
        if stage.action is None:
            return
        logger.info("%s: running %s after %s", task.task_id, stage.action.value, stage.name)
        if stage.action == StageAction.COMMIT_AND_OPEN_PR:
            self.commit_and_open_pr(task, output)
        elif stage.action == StageAction.DEPLOY_STAGING:
            self.deploy_staging(task, stage)
        elif stage.action == StageAction.DEPLOY_PRODUCTION:
            self.deploy_production(task, stage)
        elif stage.action == StageAction.UPDATE_KNOWLEDGE_BASE:
            self.update_knowledge_base(task, output)

    # -------------------------------------------------------------------
    # Version control
    # -------------------------------------------------------------------

    def commit_and_open_pr(self, task: Task, output: str) -> None:
        lowered = output.lower()
        if any(marker in lowered for marker in HALT_MARKERS):
            logger.info("%s: implementation halted by agent, skipping commit and PR", task.task_id)
            return

        if self.version_control.has_uncommitted_changes():
            commit_hash = self.version_control.commit(
                f"fix: {task.title}\n\nImplemented fix for issue #{task.issue_number}"
            )
            self.version_control.push(task.branch_name)
            logger.info("%s: committed %s to %s", task.task_id, commit_hash[:7], task.branch_name)
            self._notify(
                task,
                "\U0001f4dd **Changes Committed**\n\n"
                f"Committed and pushed changes to branch `{task.branch_name}`\n\n"
                f"Commit: `{commit_hash[:7]}`",
            )
        else:
            logger.info("%s: no changes to commit", task.task_id)

        if task.pr_number:
            return
        try:
            pr = self.issue_tracker.create_pull_request(
                title=f"Fix: {task.title}",
                body=(
                    "## Summary\n\n"
                    f"This PR fixes the issue: {task.title}\n\n"
                    f"Resolves #{task.issue_number}\n\n"
                    "## Review\n\n"
                    "The remaining pipeline stages (review, testing, deployment) run on this branch."
                ),
                head=task.branch_name,
                base=self.base_branch,
                issue_number=task.issue_number,
            )
        except IntegrationError as e:
            if PR_EXISTS_MARKER in str(e).lower():
                logger.info("%s: pull request already exists for %s", task.task_id, task.branch_name)
                return
            raise

        task.pr_number = pr.number
        task.pr_url = pr.url
        self.store.save(task)
        logger.info("%s: opened PR #%d", task.task_id, pr.number)
        self.issue_tracker.link_pull_request(task.issue_number, pr.number, pr.url)

    # -------------------------------------------------------------------
    # Deployments
    # -------------------------------------------------------------------

    def deploy_staging(self, task: Task, stage: StageDefinition) -> None:
        if self.deployment_platform is None:
            logger.info("Deployment platform not configured, skipping staging deployment")
            return
        try:
            deployment, health, logs = self._deploy(task, "staging")
        except (IntegrationError, ToolError) as e:
            logger.error("%s: staging deployment failed: %s", task.task_id, e)
            self._notify(
                task,
                f"❌ **Staging Deployment Failed**\n\nError: {e}\n\n"
                "The pipeline will continue, but staging deployment was unsuccessful.",
            )
            return

        task.staging_deployment = _record(deployment, health)
        self.store.save(task)
        self._append_deployment_report(task, stage, "Staging", deployment, health, logs)
        self._notify(
            task,
            "✅ **Staging Deployment Complete**\n\n"
            f"\U0001f310 **URL:** {deployment.url}\n"
            f"\U0001f4ca **Status:** {deployment.state.value}\n"
            f"❤️ **Health:** {'Healthy' if health.healthy else 'Unhealthy'} ({health.status_code})",
        )

    def deploy_production(self, task: Task, stage: StageDefinition) -> None:
        """Deploy and verify production; any failure is a hard stop."""
        if self.deployment_platform is None:
            logger.info("Deployment platform not configured, skipping production deployment")
            return
        try:
            deployment, health, logs = self._deploy(task, "production")
        except (IntegrationError, ToolError) as e:
            logger.error("%s: production deployment failed: %s", task.task_id, e)
            self._handle_production_failure(task, str(e))
            raise DeploymentError(f"Production deployment failed: {e}") from e

        task.production_deployment = _record(deployment, health)
        self.store.save(task)
        self._append_deployment_report(task, stage, "Production", deployment, health, logs)

        if not health.healthy:
            reason = health.error or f"Health check failed with HTTP {health.status_code}"
            self._handle_production_failure(task, reason, deployment.url)
            raise DeploymentError(f"Production deployment failed: {reason}")

        best_effort("verified label", lambda: self.issue_tracker.add_label(
            task.issue_number, "verified-in-production"))
        best_effort("failure label removal", lambda: self.issue_tracker.remove_label(
            task.issue_number, "deployment-failed"))
        self._notify(
            task,
            "✅ **Production Deployment Verified**\n\n"
            f"\U0001f310 **URL:** {deployment.url}\n"
            f"\U0001f512 **HTTP Status:** {health.status_code}\n"
            f"⏱️ **Response Time:** {health.response_time_ms}ms",
        )

    def _deploy(self, task: Task, target: str) -> tuple[Deployment, HealthReport, list[str]]:
        platform = self.deployment_platform
        self._notify(task, f"\U0001f680 **Deploying to {target}**\n\nBranch: `{task.branch_name}`")
        created = platform.create_deployment(task.branch_name, target)
        logger.info("%s: %s deployment %s created", task.task_id, target, created.id)

        ready = platform.wait_for_deployment(
            created.id,
            timeout_seconds=self.deployment_timeout_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
        )
        if ready.state != DeploymentState.READY:
            raise DeploymentError(f"Deployment {ready.id} ended in state {ready.state.value}")

        try:
            logs = platform.get_deployment_logs(ready.id)
        except IntegrationError as e:
            logger.warning("Could not fetch logs for deployment %s: %s", ready.id, e)
            logs = []
        health = platform.check_health(ready.url)
        return ready, health, logs

    def _handle_production_failure(self, task: Task, reason: str, url: Optional[str] = None) -> None:
        if task.production_deployment is not None:
            task.production_deployment.healthy = False
            self.store.save(task)

        details = f"- URL: {url}\n\n" if url else ""
        best_effort("issue reopen", lambda: self.issue_tracker.reopen_issue(task.issue_number))
        best_effort("failure label", lambda: self.issue_tracker.add_label(
            task.issue_number, "deployment-failed"))
        best_effort("verified label removal", lambda: self.issue_tracker.remove_label(
            task.issue_number, "verified-in-production"))
        self._notify(
            task,
            "\U0001f6a8 **Production Deployment Failed**\n\n"
            f"**Reason:** {reason}\n\n{details}"
            "**Issue has been reopened for investigation.**",
        )

    def _append_deployment_report(
        self,
        task: Task,
        stage: StageDefinition,
        label: str,
        deployment: Deployment,
        health: HealthReport,
        logs: list[str],
    ) -> None:
        tail = "\n".join(logs[-10:])
        report = (
            f"\n\n---\n\n## {label} Deployment\n\n"
            f"**Deployment ID:** `{deployment.id}`\n"
            f"**Deployment URL:** {deployment.url}\n"
            f"**Status:** {deployment.state.value}\n\n"
            "**Health Check:**\n"
            f"- HTTP Status: {health.status_code}\n"
            f"- Response Time: {health.response_time_ms}ms\n"
            f"- Healthy: {'Yes' if health.healthy else 'No'}\n\n"
            f"**Build Logs (last 10 lines):**\n```\n{tail}\n```\n"
        )
        self.store.append_artifact(task.task_id, stage.artifact_name, report)

    # -------------------------------------------------------------------
    # Knowledge base
    # -------------------------------------------------------------------

    def update_knowledge_base(self, task: Task, output: str) -> None:
        if self.knowledge_base is None:
            logger.info("Knowledge base not configured, skipping wiki updates")
            return

        parsed = parse_knowledge_updates(output)
        if not parsed.updates:
            return

        kb = self.knowledge_base
        applied: list[str] = []
        for update in parsed.updates:
            try:
                if update.action == "create":
                    kb.create_page(update.page, update.content)
                elif update.action == "update" and not update.section:
                    kb.update_page(update.page, update.content)
                elif update.section:
                    existing = kb.get_page(update.page)
                    kb.update_page(update.page, apply_section_update(existing, update.section, update.content))
                else:
                    kb.append_to_page(update.page, update.content)
                applied.append(update.page)
            except (IntegrationError, ToolError, OSError) as e:
                logger.error("%s: wiki update for %s failed: %s", task.task_id, update.page, e)

        if not applied:
            return
        try:
            kb.commit(parsed.commit_message)
            kb.push()
        except (IntegrationError, ToolError) as e:
            logger.error("%s: failed to publish wiki updates: %s", task.task_id, e)
            return

        logger.info("%s: applied %d wiki updates", task.task_id, len(applied))
        pages = ", ".join(page.removesuffix(".md") for page in applied)
        self._notify(task, f"\U0001f4da **Wiki Updated**\n\n**Pages Updated:** {pages}")

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def _notify(self, task: Task, body: str) -> None:
        best_effort("comment", lambda: self.issue_tracker.add_comment(task.issue_number, body))


def best_effort(what: str, call: Callable[[], None]) -> None:
    """Run a tracker call whose failure must not fail the stage."""
    try:
        call()
    except IntegrationError as e:
        logger.warning("Issue tracker %s failed: %s", what, e)


def _record(deployment: Deployment, health: HealthReport) -> DeploymentRecord:
    return DeploymentRecord(
        deployment_id=deployment.id,
        url=deployment.url,
        state=deployment.state,
        healthy=health.healthy,
        status_code=health.status_code,
        response_time_ms=health.response_time_ms,
    )
