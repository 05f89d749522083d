"""Stage runner for IssueFlow.

Drives one task through the PipelineDefinition, one stage per
run_next_stage() call:

  load → mark in progress → build context → invoke agent
       → (on failure) self-heal and retry, or fail the task
       → store output + decision → post-stage action
       → branching (halt / auto-resolve / decompose) → approval gate → advance

Every status change goes through the TaskRouter and is persisted before
the next step, so a crash at any point resumes from the stored record.
Agent context is rebuilt from persisted StageResults on every call.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from issueflow.core.exceptions import (
    AgentInvocationError,
    IntegrationError,
    InvalidTransitionError,
    IssueFlowError,
)
from issueflow.core.models import (
    AgentContext,
    AgentResult,
    DecisionKind,
    StageResult,
    StageStatus,
    Task,
    TaskStatus,
    task_id_for_issue,
)
from issueflow.db.task_store import TaskStore
from issueflow.integrations.protocols import (
    AgentInvoker,
    ChatChannel,
    Decomposer,
    DeploymentPlatform,
    IssueTracker,
    KnowledgeBase,
    VersionControl,
)
from issueflow.orchestrator.decisions import (
    DEFAULT_INTAKE_HALT,
    BranchAction,
    BranchingPolicy,
    extract_decision,
)
from issueflow.orchestrator.notifier import Notifier
from issueflow.orchestrator.pipeline import PipelineDefinition, StageDefinition, default_pipeline
from issueflow.orchestrator.self_healing import AgentRecoveryStrategy, SelfHealingController
from issueflow.orchestrator.stage_actions import StageActionRunner, best_effort
from issueflow.orchestrator.task_router import TaskRouter
from issueflow.security.policy import DEFAULT_MAX_READ_BYTES
from issueflow.tools.sandbox import ToolSandbox
from issueflow.tools.todo import TodoManager

logger = logging.getLogger("issueflow.orchestrator.runner")

AutoResolveCallback = Callable[[Task, str], None]

_STALE_LABELS = ("failed", "in-progress", "awaiting-human-review")
_STAGE_LABEL = re.compile(r"^stage-\d+$")


def branch_name_for(issue_number: int, title: str) -> str:
    """``fix/issue-<n>-<slug>`` with a lowercase slug of at most 50 characters."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower())[:50].strip("-")
    return f"fix/issue-{issue_number}-{slug}" if slug else f"fix/issue-{issue_number}"


class Orchestrator:
    """Sequences a task through the pipeline's stages.

    Injected dependencies:
        store: Persisted task records and artifacts.
        invoker: Runs one agent for one stage.
        issue_tracker: Issue source, comments, labels and pull requests.
        version_control: Branch, commit and push for the working copy.
        pipeline: Stage definitions and branching indices.
        healer: Self-healing controller; defaults to the debugger agent.
        deployment_platform: Optional; deploy actions are skipped without it.
        knowledge_base: Optional; wiki updates are skipped without it.
        decomposer: Optional; consulted only when auto-decomposition is on.
        chat_channel: Optional; receives status cards alongside issue comments.
        auto_resolve: Called when every consensus source signals closure;
            defaults to closing the issue.
    """

    def __init__(
        self,
        store: TaskStore,
        invoker: AgentInvoker,
        issue_tracker: IssueTracker,
        version_control: VersionControl,
        pipeline: Optional[PipelineDefinition] = None,
        healer: Optional[SelfHealingController] = None,
        deployment_platform: Optional[DeploymentPlatform] = None,
        knowledge_base: Optional[KnowledgeBase] = None,
        decomposer: Optional[Decomposer] = None,
        chat_channel: Optional[ChatChannel] = None,
        enable_auto_decomposition: bool = False,
        intake_halt_decisions: Iterable[DecisionKind | str] = DEFAULT_INTAKE_HALT,
        auto_resolve: Optional[AutoResolveCallback] = None,
        base_branch: str = "main",
        sandbox_base_dir: str | Path = ".",
        sandbox_max_read_bytes: int = DEFAULT_MAX_READ_BYTES,
        audit_log_path: Optional[str | Path] = None,
        deployment_timeout_seconds: float = 600,
        poll_interval_seconds: float = 5.0,
    ):
        self.store = store
        self.invoker = invoker
        self.issue_tracker = issue_tracker
        self.version_control = version_control
        self.pipeline = pipeline or default_pipeline()
        self.healer = healer or SelfHealingController(AgentRecoveryStrategy(invoker))
        self.decomposer = decomposer
        self.enable_auto_decomposition = enable_auto_decomposition
        self.auto_resolve = auto_resolve or self._close_issue
        self.base_branch = base_branch
        self.sandbox_base_dir = Path(sandbox_base_dir)
        self.sandbox_max_read_bytes = sandbox_max_read_bytes
        self.audit_log_path = audit_log_path

        self.router = TaskRouter(store)
        self.branching = BranchingPolicy(self.pipeline, intake_halt_decisions=intake_halt_decisions)
        self.notifier = Notifier(issue_tracker, self.pipeline, channel=chat_channel)
        self.actions = StageActionRunner(
            store=store,
            issue_tracker=issue_tracker,
            version_control=version_control,
            deployment_platform=deployment_platform,
            knowledge_base=knowledge_base,
            base_branch=base_branch,
            deployment_timeout_seconds=deployment_timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )

    # -------------------------------------------------------------------
    # Public surface
    # -------------------------------------------------------------------

    def start_task(self, issue_number: int) -> Task:
        """Create a fresh task for an issue and its working branch."""
        issue, comments = self.issue_tracker.get_issue_with_comments(issue_number)
        task_id = task_id_for_issue(issue_number)
        is_rerun = self.store.exists(task_id) or "failed" in issue.labels

        task = Task(
            task_id=task_id,
            issue_number=issue_number,
            title=issue.title,
            body=issue.body or "No description provided",
            url=issue.url,
            comments=comments,
            labels=list(issue.labels),
            branch_name=branch_name_for(issue_number, issue.title),
            stages=[
                StageResult(stage_name=stage.name, agent_name=stage.agent_name)
                for stage in self.pipeline.stages
            ],
        )
        self.store.create(task)

        logger.info("Creating branch %s", task.branch_name)
        self.version_control.create_branch(task.branch_name, from_branch=self.base_branch)

        if is_rerun:
            stale = [*_STALE_LABELS, *(label for label in issue.labels if _STAGE_LABEL.match(label))]
            for label in stale:
                best_effort(f"remove label {label}", lambda label=label: self.issue_tracker.remove_label(
                    issue_number, label))
            heading = "\U0001f504 **Pipeline Restarted**"
        else:
            heading = "\U0001f33f **Branch Created**"
        best_effort("start comment", lambda: self.issue_tracker.add_comment(
            issue_number,
            f"{heading}\n\nWorking on branch `{task.branch_name}`.\n\n"
            f"The pipeline will run {len(self.pipeline)} stages on this issue.",
        ))
        self.notifier.pipeline_started(task)

        logger.info("Task %s created for issue #%d (rerun=%s)", task_id, issue_number, is_rerun)
        return task

    def run_next_stage(self, task_id: str) -> Task:
        """Run the current stage once. A no-op unless the task is runnable."""
        task = self.store.load(task_id)
        if not self.router.is_runnable(task):
            logger.info("Task %s is %s, nothing to run", task_id, task.status.value)
            return task

        index = task.current_stage
        if index >= len(self.pipeline):
            if task.status == TaskStatus.PENDING:
                self.router.transition(task, TaskStatus.IN_PROGRESS, reason="resume past last stage")
            return self.router.mark_completed(task)

        stage = self.pipeline[index]
        if task.stages[index].status == StageStatus.COMPLETED:
            # Interrupted between completing the stage and advancing past it.
            logger.warning("Stage %s of %s already completed, resuming after it", stage.name, task_id)
            if task.status == TaskStatus.PENDING:
                self.router.transition(task, TaskStatus.IN_PROGRESS, reason=f"resume after {stage.name}")
            output = task.stages[index].output or ""
        else:
            while True:
                context = self._begin_stage(task, index, stage)
                agent_result, error = self._invoke(task, index, stage, context)
                if error is None:
                    break

                logger.error("Stage %s of %s failed: %s", stage.name, task_id, error)
                if self.healer.can_attempt(task, index):
                    self.notifier.healing_attempt(
                        task, index, self.healer.attempts_for(task, index) + 1, self.healer.max_attempts,
                        str(error),
                    )
                outcome = self.healer.attempt(
                    task, index, error, context, stage_name=stage.name, agent_name=stage.agent_name,
                )
                self.store.save(task)
                if not outcome.exhausted:
                    self.notifier.healing_result(task, outcome.healed, outcome.summary)
                if outcome.healed:
                    logger.info("Self-healing succeeded, retrying %s", stage.name)
                    continue
                return self._fail_stage(task, index, str(error))

            self._complete_stage(task, index, stage, agent_result)
            output = agent_result.output

        try:
            self.actions.run(task, stage, output)
        except IntegrationError as e:
            logger.error("Post-stage action for %s failed: %s", stage.name, e)
            return self._fail_stage(task, index, str(e))

        return self._after_stage(task, index, stage, output)

    def approve_stage(self, task_id: str) -> Task:
        """Release a task halted for approval and move past the current stage."""
        task = self.store.load(task_id)
        if task.status != TaskStatus.AWAITING_APPROVAL:
            raise InvalidTransitionError(
                f"Task {task_id} is not awaiting approval (status: {task.status.value})"
            )
        logger.info("Stage %d of %s approved", task.current_stage, task_id)
        task = self.router.advance(task, len(self.pipeline))
        if task.status == TaskStatus.COMPLETED:
            self.notifier.pipeline_completed(task)
        return task

    def approve_closure(self, task_id: str) -> Task:
        """Accept the agents' recommendation: close the issue and complete the task."""
        task = self.store.load(task_id)
        if task.status != TaskStatus.AWAITING_CLOSURE_APPROVAL:
            raise InvalidTransitionError(
                f"Task {task_id} is not awaiting closure approval (status: {task.status.value})"
            )
        self.issue_tracker.close_issue(
            task.issue_number,
            "\U0001f512 **Issue Closed by Human Approval**\n\n"
            "A human reviewer has approved the agents' recommendation to close this issue.\n\n"
            + self.notifier.closure_summary(task, "Closure approved by a human reviewer"),
        )
        best_effort("label cleanup", lambda: self.issue_tracker.remove_label(
            task.issue_number, "awaiting-human-review"))
        best_effort("label cleanup", lambda: self.issue_tracker.remove_label(
            task.issue_number, "in-progress"))
        best_effort("closure label", lambda: self.issue_tracker.add_label(
            task.issue_number, "closed-by-approval"))
        return self.router.mark_completed(task, reason="closure approved")

    def override_halt(self, task_id: str) -> Task:
        """Reject the agents' closure recommendation and continue with the next stage."""
        task = self.store.load(task_id)
        if task.status != TaskStatus.AWAITING_CLOSURE_APPROVAL:
            raise InvalidTransitionError(
                f"Task {task_id} is not awaiting closure approval (status: {task.status.value})"
            )
        logger.warning("Overriding closure recommendation for %s", task_id)
        task = self.router.advance(task, len(self.pipeline))
        best_effort("override comment", lambda: self.issue_tracker.add_comment(
            task.issue_number,
            "⚡ **Human Override - Pipeline Continuing**\n\n"
            "A human reviewer has chosen to override the agents' recommendation to halt.\n\n"
            f"The pipeline will continue from Stage {task.current_stage + 1}.",
        ))
        best_effort("label cleanup", lambda: self.issue_tracker.remove_label(
            task.issue_number, "awaiting-human-review"))
        best_effort("override label", lambda: self.issue_tracker.add_label(
            task.issue_number, "human-override"))
        return task

    def run_pipeline(self, task_id: str) -> Task:
        """Run stages until the task halts, fails or completes."""
        task = self.store.load(task_id)
        while self.router.is_runnable(task):
            task = self.run_next_stage(task_id)
        logger.info(self.router.get_transition_history_summary(task))
        return task

    def get_task_state(self, task_id: str) -> Task:
        return self.store.load(task_id)

    def list_tasks(self) -> list[str]:
        return self.store.list()

    # -------------------------------------------------------------------
    # Stage steps
    # -------------------------------------------------------------------

    def _begin_stage(self, task: Task, index: int, stage: StageDefinition) -> AgentContext:
        result = task.stages[index]
        result.status = StageStatus.IN_PROGRESS
        result.started_at = datetime.now(UTC)
        result.error = None
        self.router.transition(task, TaskStatus.IN_PROGRESS, reason=stage.name)
        self.notifier.stage_started(task, index)
        return self._build_context(task, index)

    def _invoke(
        self, task: Task, index: int, stage: StageDefinition, context: AgentContext,
    ) -> tuple[Optional[AgentResult], Optional[Exception]]:
        sandbox = self._make_sandbox(task, index, stage) if stage.tools_enabled else None
        logger.info("Running %s (%s) for %s", stage.name, stage.agent_name, task.task_id)
        try:
            result = self.invoker.invoke(stage.agent_name, context, sandbox=sandbox)
        except Exception as e:
            return None, e
        if not result.success:
            return None, AgentInvocationError(result.error or "Agent execution failed")
        return result, None

    def _complete_stage(self, task: Task, index: int, stage: StageDefinition, agent_result: AgentResult) -> None:
        result = task.stages[index]
        result.status = StageStatus.COMPLETED
        result.completed_at = datetime.now(UTC)
        result.output = agent_result.output
        result.usage = agent_result.usage
        result.decision = extract_decision(agent_result.output)
        result.artifact_path = str(self.store.save_artifact(task.task_id, stage.artifact_name, agent_result.output))
        if agent_result.todo_state is not None:
            task.todo_state = agent_result.todo_state
        self.store.save(task)

        logger.info(
            "Stage %s of %s completed (%d tokens, decision=%s)",
            stage.name, task.task_id, result.usage.total_tokens, result.decision.raw or "none",
        )
        self.notifier.stage_completed(task, index)

    def _after_stage(self, task: Task, index: int, stage: StageDefinition, output: str) -> Task:
        outcome = self.branching.evaluate(task, index)

        if outcome.action == BranchAction.HALT_FOR_CLOSURE:
            self.router.transition(task, TaskStatus.AWAITING_CLOSURE_APPROVAL, reason=outcome.reason)
            self.notifier.halted_for_closure(task, index, outcome.reason)
            return task

        if outcome.action == BranchAction.HALT_FOR_APPROVAL:
            self.router.transition(task, TaskStatus.AWAITING_APPROVAL, reason=outcome.reason)
            self.notifier.awaiting_approval(task, index, outcome.reason)
            return task

        if outcome.action == BranchAction.AUTO_RESOLVE:
            try:
                self.auto_resolve(task, outcome.reason)
            except IssueFlowError as e:
                logger.error("Auto-resolve callback for %s failed: %s", task.task_id, e)
            return self.router.mark_completed(task, reason=outcome.reason)

        if index == self.pipeline.intake_stage and self._try_decompose(task, output):
            return task

        if stage.requires_approval:
            self.router.transition(task, TaskStatus.AWAITING_APPROVAL, reason=f"{stage.name} requires approval")
            self.notifier.awaiting_approval(task, index)
            return task

        task = self.router.advance(task, len(self.pipeline))
        if task.status == TaskStatus.COMPLETED:
            self.notifier.pipeline_completed(task)
        return task

    def _try_decompose(self, task: Task, intake_output: str) -> bool:
        if not self.enable_auto_decomposition or self.decomposer is None:
            return False
        try:
            if not self.decomposer.should_decompose(task, intake_output):
                return False
            child_ids = self.decomposer.decompose(task)
        except IssueFlowError as e:
            logger.error("Decomposition of %s failed, continuing pipeline: %s", task.task_id, e)
            return False

        task.child_task_ids = child_ids
        self.router.transition(task, TaskStatus.DECOMPOSED, reason=f"{len(child_ids)} sub-tasks")
        return True

    def _fail_stage(self, task: Task, index: int, message: str) -> Task:
        result = task.stages[index]
        result.status = StageStatus.FAILED
        result.error = message
        self.router.mark_failed(task, message)
        self.notifier.stage_failed(task, index, message)
        return task

    # -------------------------------------------------------------------
    # Context
    # -------------------------------------------------------------------

    def _build_context(self, task: Task, index: int) -> AgentContext:
        previous: dict[str, str] = {}
        for stage in task.stages[:index]:
            if stage.status in (StageStatus.COMPLETED, StageStatus.SKIPPED) and stage.output:
                previous[f"{stage.agent_name}_output"] = stage.output

        extra = {}
        if task.production_deployment is not None:
            extra["production_deployment"] = task.production_deployment.model_dump(mode="json")

        return AgentContext(
            task_id=task.task_id,
            issue_number=task.issue_number,
            issue_title=task.title,
            issue_body=task.body,
            issue_url=task.url,
            issue_comments="\n\n---\n\n".join(
                f"[{c.created_at}] @{c.user}:\n{c.body}" for c in task.comments
            ),
            issue_labels=", ".join(task.labels),
            stage_index=index,
            previous_outputs=previous,
            todo_state=task.todo_state.model_copy(deep=True) if task.todo_state else None,
            extra=extra,
        )

    def _make_sandbox(self, task: Task, index: int, stage: StageDefinition) -> ToolSandbox:
        todos = TodoManager(task.task_id, task.issue_number)
        if task.todo_state is not None:
            todos.load_state(task.todo_state)
        return ToolSandbox(
            base_dir=self.sandbox_base_dir,
            max_read_bytes=self.sandbox_max_read_bytes,
            audit_log_path=self.audit_log_path,
            todo_manager=todos,
            agent_name=stage.agent_name,
            stage_index=index,
        )

    # -------------------------------------------------------------------
    # Tracker helpers
    # -------------------------------------------------------------------

    def _close_issue(self, task: Task, reason: str) -> None:
        self.issue_tracker.close_issue(task.issue_number, self.notifier.closure_summary(task, reason))
        best_effort("auto-closed label", lambda: self.issue_tracker.add_label(
            task.issue_number, "auto-closed"))
        best_effort("label cleanup", lambda: self.issue_tracker.remove_label(
            task.issue_number, "in-progress"))
        logger.info("Issue #%d auto-closed: %s", task.issue_number, reason)
