"""Issue comments and labels that report pipeline progress.

When a chat channel is configured, the same lifecycle events (start, stage
complete, failure, self-healing, halts, completion) are also posted there
as short status cards. Every method is best effort: a tracker or chat
outage is logged and never fails the stage being reported on.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Callable, Optional

from issueflow.core.models import ChatField, ChatLevel, ChatMessage, StageStatus, Task
from issueflow.integrations.protocols import ChatChannel, IssueTracker
from issueflow.llm.response_parser import extract_summary
from issueflow.orchestrator.pipeline import PipelineDefinition

logger = logging.getLogger("issueflow.orchestrator.notifier")

AGENT_EMOJI = {
    "intake": "\U0001f4e5",
    "detective": "\U0001f50d",
    "archaeologist": "⛏️",
    "surgeon": "\U0001f527",
    "critic": "\U0001f441️",
    "validator": "✅",
    "skeptic": "\U0001f914",
    "gatekeeper": "\U0001f6aa",
    "advocate": "\U0001f464",
    "planner": "\U0001f4cb",
    "commander": "\U0001f680",
    "guardian": "\U0001f6e1️",
    "historian": "\U0001f4dc",
    "archivist": "\U0001f4da",
}


class Notifier:
    """Posts human-visible progress to the issue tracker."""

    def __init__(
        self,
        issue_tracker: IssueTracker,
        pipeline: PipelineDefinition,
        channel: Optional[ChatChannel] = None,
    ):
        self.issue_tracker = issue_tracker
        self.pipeline = pipeline
        self.channel = channel

    # -------------------------------------------------------------------
    # Stage lifecycle
    # -------------------------------------------------------------------

    def pipeline_started(self, task: Task) -> None:
        self._post(ChatMessage(
            title=f"Pipeline Started for Issue #{task.issue_number}",
            description=task.title,
            fields=[
                ChatField(name="Branch", value=f"`{task.branch_name}`"),
                ChatField(name="Stages", value=str(len(self.pipeline))),
            ],
        ))

    def stage_started(self, task: Task, stage_index: int) -> None:
        stage = self.pipeline[stage_index]
        total = len(self.pipeline)

        def send() -> None:
            if stage_index > 0:
                self.issue_tracker.remove_label(task.issue_number, f"stage-{stage_index}")
            self.issue_tracker.add_label(task.issue_number, f"stage-{stage_index + 1}")
            self.issue_tracker.add_label(task.issue_number, "in-progress")
            self.issue_tracker.add_comment(
                task.issue_number,
                f"{_emoji(stage.agent_name)} **{stage.agent_name.upper()}** is now working on this issue\n\n"
                f"**Stage {stage_index + 1}/{total}:** {stage.name}\n"
                f"**Started:** {_timestamp()}",
            )

        self._safe("stage start", send)

    def stage_completed(self, task: Task, stage_index: int) -> None:
        stage = self.pipeline[stage_index]
        result = task.stages[stage_index]
        total = len(self.pipeline)
        lines = [
            f"✅ **{stage.agent_name.upper()}** has completed their analysis",
            "",
            f"**Stage {stage_index + 1}/{total}:** {stage.name}",
            f"**Duration:** {result.usage.duration_ms / 1000:.1f}s",
            f"**Tokens:** {result.usage.total_tokens:,}",
            "",
        ]
        summary = extract_summary(result.output or "")
        if summary:
            lines += ["### Summary", summary, ""]
        if stage_index + 1 < total:
            following = self.pipeline[stage_index + 1]
            lines.append(f"⏭️ **Next:** {following.name} ({following.agent_name})")
        self._comment(task, "stage complete", "\n".join(lines))

        progress = f"{stage_index + 1}/{total}"
        self._post(ChatMessage(
            title=f"Stage Complete: {stage.name}",
            description=summary or f"Issue #{task.issue_number} - Stage {progress}",
            level=ChatLevel.PROGRESS,
            fields=[
                ChatField(name="Issue", value=f"#{task.issue_number}"),
                ChatField(name="Progress", value=progress),
            ],
        ))

    def stage_failed(self, task: Task, stage_index: int, error: str) -> None:
        stage = self.pipeline[stage_index]

        def send() -> None:
            self.issue_tracker.add_label(task.issue_number, "failed")
            self.issue_tracker.remove_label(task.issue_number, "in-progress")
            self.issue_tracker.add_comment(
                task.issue_number,
                f"❌ **{stage.agent_name.upper()}** encountered an error\n\n"
                f"**Stage {stage_index + 1}/{len(self.pipeline)}:** {stage.name}\n"
                f"**Error:** {error}\n\n"
                "_The pipeline has been halted. Please review the error and retry._",
            )

        self._safe("stage failure", send)
        self._post(ChatMessage(
            title=f"Pipeline Failed at {stage.name}",
            description=task.title,
            level=ChatLevel.ERROR,
            fields=[
                ChatField(name="Issue", value=f"#{task.issue_number}"),
                ChatField(name="Error", value=error, inline=False),
            ],
        ))

    def healing_attempt(self, task: Task, stage_index: int, attempt: int, max_attempts: int, error: str) -> None:
        self._comment(
            task, "self-healing attempt",
            f"\U0001f527 **Self-Healing Attempt {attempt}/{max_attempts}**\n\n"
            f"Stage **{self.pipeline[stage_index].name}** failed with error:\n```\n{error}\n```\n\n"
            "Analyzing error and attempting automatic fix...",
        )
        self._post(ChatMessage(
            title="Self-Healing Triggered",
            description=f"Issue #{task.issue_number} - {self.pipeline[stage_index].name}",
            level=ChatLevel.WARNING,
            fields=[
                ChatField(name="Attempt", value=f"{attempt}/{max_attempts}"),
                ChatField(name="Reason", value=error, inline=False),
            ],
        ))

    def healing_result(self, task: Task, healed: bool, summary: str) -> None:
        if healed:
            body = f"✅ **Self-Healing Successful**\n\n{summary}\n\nRetrying stage..."
        else:
            body = (
                "⚠️ **Self-Healing Incomplete**\n\n"
                f"**Analysis:**\n{summary}\n\nHuman intervention may be required."
            )
        self._comment(task, "self-healing result", body)

    def pipeline_completed(self, task: Task) -> None:
        done = [s for s in task.stages if s.status == StageStatus.COMPLETED]
        tokens = sum(s.usage.total_tokens for s in done)
        duration_ms = sum(s.usage.duration_ms for s in done)

        def send() -> None:
            self.issue_tracker.remove_label(task.issue_number, "in-progress")
            self.issue_tracker.remove_label(task.issue_number, f"stage-{len(task.stages)}")
            self.issue_tracker.add_label(task.issue_number, "completed")
            self.issue_tracker.add_comment(
                task.issue_number,
                "\U0001f389 **PIPELINE COMPLETED SUCCESSFULLY!**\n\n"
                f"- **Stages Completed:** {len(done)}/{len(task.stages)}\n"
                f"- **Total Duration:** {duration_ms / 1000:.1f}s\n"
                f"- **Total Tokens:** {tokens:,}\n\n"
                f"Artifacts are saved under `{task.task_id}/` in the task store.",
            )

        self._safe("pipeline complete", send)

        fields = [ChatField(name="Issue", value=f"#{task.issue_number}")]
        if task.pr_url:
            fields.append(ChatField(name="Pull Request", value=task.pr_url))
        if task.production_deployment is not None:
            fields.append(ChatField(name="Deployment", value=task.production_deployment.url, inline=False))
        self._post(ChatMessage(
            title="Pipeline Completed Successfully",
            description=task.title,
            level=ChatLevel.SUCCESS,
            fields=fields,
            footer="Ready for review",
        ))

    # -------------------------------------------------------------------
    # Halts
    # -------------------------------------------------------------------

    def halted_for_closure(self, task: Task, stage_index: int, reason: str) -> None:
        body = (
            "⚠️ **EARLY TERMINATION REQUESTED**\n\n"
            "The pipeline has detected this issue should not proceed to full implementation.\n\n"
            f"**Stage:** {self.pipeline[stage_index].name}\n"
            f"**Reason:** {reason}\n\n"
            "### Agent Recommendations:\n\n"
            f"{self._recommendations(task, stage_index)}"
            "### Human Approval Required\n\n"
            f"1. **Approve Closure:** `issueflow approve-closure {task.task_id}`\n"
            f"2. **Override & Continue:** `issueflow override {task.task_id}`\n"
        )

        def send() -> None:
            self.issue_tracker.add_comment(task.issue_number, body)
            self.issue_tracker.add_label(task.issue_number, "awaiting-human-review")

        self._safe("early termination", send)
        self._post(self._approval_card(task, "Ready for Closure", "approve closure or override"))

    def awaiting_approval(self, task: Task, stage_index: int, reason: Optional[str] = None) -> None:
        stage = self.pipeline[stage_index]
        self._comment(
            task, "approval request",
            f"⏸️ **Approval Required**\n\n"
            f"**Stage {stage_index + 1}/{len(self.pipeline)}:** {stage.name} has completed"
            + (f" ({reason})" if reason else "")
            + f".\n\nApprove to continue: `issueflow approve {task.task_id}`",
        )
        self._post(self._approval_card(task, "Approval Required", "review and approve"))

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------

    def closure_summary(self, task: Task, reason: str) -> str:
        """Comment body used when closing an issue on the agents' recommendation."""
        return (
            "\U0001f916 **Closed by the issue pipeline**\n\n"
            f"**Reason:** {reason}\n\n"
            f"{self._recommendations(task, task.current_stage)}"
            "If you believe this is incorrect, please provide more details and reopen the issue."
        )

    def _recommendations(self, task: Task, up_to: int) -> str:
        parts = []
        for stage in task.stages[: up_to + 1]:
            if stage.status == StageStatus.COMPLETED and stage.output:
                parts.append(f"**{stage.agent_name}:** {extract_summary(stage.output)[:200]}\n\n")
        return "".join(parts)

    def _approval_card(self, task: Task, title: str, action: str) -> ChatMessage:
        fields = [ChatField(name="Issue", value=task.url or f"#{task.issue_number}")]
        if task.pr_url:
            fields.append(ChatField(name="Pull Request", value=task.pr_url))
        fields.append(ChatField(name="Action Required", value=f"Please {action}", inline=False))
        return ChatMessage(title=title, description=task.title, level=ChatLevel.WARNING, fields=fields)

    def _post(self, message: ChatMessage) -> None:
        if self.channel is None:
            return
        try:
            delivered = self.channel.send(message)
        except Exception as e:
            logger.warning("Failed to post %r to chat: %s", message.title, e)
            return
        if not delivered:
            logger.warning("Chat channel did not accept %r", message.title)

    def _comment(self, task: Task, what: str, body: str) -> None:
        self._safe(what, lambda: self.issue_tracker.add_comment(task.issue_number, body))

    def _safe(self, what: str, send: Callable[[], None]) -> None:
        try:
            send()
        except Exception as e:
            logger.warning("Failed to send %s notification: %s", what, e)


def _emoji(agent_name: str) -> str:
    return AGENT_EMOJI.get(agent_name, "\U0001f916")


def _timestamp() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
