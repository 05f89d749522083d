"""Tests for issueflow/orchestrator/runner.py: the stage runner end to end.

Every scenario runs against the file-backed TaskStore and the in-memory
collaborators, with agent output scripted per agent name.
"""

import pytest

from issueflow.core.exceptions import (
    AgentInvocationError,
    InvalidTransitionError,
    IssueTrackerError,
    OrchestratorError,
    TaskNotFoundError,
)
from issueflow.core.models import AgentResult, StageStatus, TaskStatus
from issueflow.integrations.memory import InMemoryChatChannel, InMemoryDeploymentPlatform, StaticDecomposer
from issueflow.orchestrator.decisions import extract_decision
from issueflow.orchestrator.pipeline import StageAction
from issueflow.orchestrator.runner import branch_name_for
from tests.conftest import make_pipeline

FIXED = "## Error Summary\nTimeout\n\n## Fix Applied\nIncreased the timeout.\n\n## Status\n**Status:** FIXED"
NOT_FIXED = "## Root Cause\nUnclear.\n\n## Status\nNEEDS_HUMAN"


class TestBranchName:
    def test_slug(self):
        assert branch_name_for(42, "Login button does nothing!") == "fix/issue-42-login-button-does-nothing"

    def test_slug_truncated(self):
        name = branch_name_for(7, "x" * 80)
        assert name == "fix/issue-7-" + "x" * 50

    def test_empty_slug(self):
        assert branch_name_for(7, "!!!") == "fix/issue-7"


class TestStartTask:
    def test_creates_task_and_branch(self, build_orchestrator, tracker, vcs, store):
        orch = build_orchestrator()
        task = orch.start_task(42)

        assert task.task_id == "ISSUE-42"
        assert task.status == TaskStatus.PENDING
        assert task.current_stage == 0
        assert [s.agent_name for s in task.stages] == ["intake", "detective", "archaeologist", "surgeon", "critic"]
        assert vcs.current == task.branch_name
        assert store.exists("ISSUE-42")
        assert "Branch Created" in tracker.comment_bodies(42)[-1]

    def test_missing_body_gets_placeholder(self, build_orchestrator, tracker):
        tracker.add_issue(50, "Empty report")
        task = build_orchestrator().start_task(50)
        assert task.body == "No description provided"

    def test_rerun_clears_stale_labels(self, build_orchestrator, tracker):
        for label in ("failed", "in-progress", "stage-3", "awaiting-human-review"):
            tracker.add_label(42, label)

        build_orchestrator().start_task(42)

        assert tracker.issues[42].labels == ["bug"]
        assert "Pipeline Restarted" in tracker.comment_bodies(42)[-1]

    def test_restart_resets_record(self, build_orchestrator, invoker):
        orch = build_orchestrator()
        orch.start_task(42)
        orch.run_next_stage("ISSUE-42")
        assert orch.get_task_state("ISSUE-42").current_stage == 1

        task = orch.start_task(42)
        assert task.current_stage == 0
        assert orch.get_task_state("ISSUE-42").stages[0].status == StageStatus.PENDING

    def test_unknown_issue_raises(self, build_orchestrator):
        with pytest.raises(IssueTrackerError):
            build_orchestrator().start_task(999)


class TestRunNextStage:
    def test_runs_one_stage(self, build_orchestrator, invoker, store):
        orch = build_orchestrator()
        orch.start_task(42)
        task = orch.run_next_stage("ISSUE-42")

        assert task.status == TaskStatus.PENDING
        assert task.current_stage == 1
        assert task.stages[0].status == StageStatus.COMPLETED
        assert task.stages[0].usage.total_tokens == 100
        assert store.load_artifact("ISSUE-42", "intake-report.md") == "## Summary\nAnalysis complete."
        assert [c.agent_name for c in invoker.calls] == ["intake"]

    def test_context_carries_previous_outputs(self, build_orchestrator, invoker):
        invoker.queue("intake", "## Summary\nValid bug.")
        invoker.queue("detective", "## Summary\nIn the click handler.")
        orch = build_orchestrator()
        orch.start_task(42)
        for _ in range(3):
            orch.run_next_stage("ISSUE-42")

        context = invoker.calls_for("archaeologist")[0].context
        assert context.stage_index == 2
        assert context.previous_outputs == {
            "intake_output": "## Summary\nValid bug.",
            "detective_output": "## Summary\nIn the click handler.",
        }
        assert context.issue_labels == "bug"

    def test_current_stage_never_decreases(self, build_orchestrator):
        orch = build_orchestrator()
        orch.start_task(42)
        seen = [0]
        for _ in range(6):
            seen.append(orch.run_next_stage("ISSUE-42").current_stage)
        assert seen == sorted(seen)
        assert orch.get_task_state("ISSUE-42").status == TaskStatus.COMPLETED

    def test_noop_for_terminal_task(self, build_orchestrator, invoker):
        orch = build_orchestrator()
        orch.start_task(42)
        orch.run_pipeline("ISSUE-42")
        calls = len(invoker.calls)

        task = orch.run_next_stage("ISSUE-42")
        assert task.status == TaskStatus.COMPLETED
        assert len(invoker.calls) == calls

    def test_unknown_task_raises(self, build_orchestrator):
        with pytest.raises(TaskNotFoundError):
            build_orchestrator().run_next_stage("ISSUE-404")

    def test_resume_with_fresh_orchestrator(self, build_orchestrator, invoker):
        first = build_orchestrator()
        first.start_task(42)
        first.run_next_stage("ISSUE-42")
        first.run_next_stage("ISSUE-42")

        second = build_orchestrator()
        task = second.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.COMPLETED
        assert [c.agent_name for c in invoker.calls].count("intake") == 1
        assert "intake_output" in invoker.calls_for("critic")[0].context.previous_outputs

    def test_run_pipeline_completes(self, build_orchestrator, tracker):
        orch = build_orchestrator()
        orch.start_task(42)
        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.COMPLETED
        assert all(s.status == StageStatus.COMPLETED for s in task.stages)
        assert "completed" in tracker.issues[42].labels
        assert "PIPELINE COMPLETED" in tracker.comment_bodies(42)[-1]

    def test_chat_channel_follows_the_run(self, build_orchestrator):
        channel = InMemoryChatChannel()
        orch = build_orchestrator(chat_channel=channel)
        orch.start_task(42)
        orch.run_pipeline("ISSUE-42")

        titles = channel.titles()
        assert titles[0] == "Pipeline Started for Issue #42"
        assert "Stage Complete: Stage 4: Critic" in titles
        assert titles[-1] == "Pipeline Completed Successfully"

    def test_list_tasks(self, build_orchestrator, tracker):
        tracker.add_issue(7, "Another")
        orch = build_orchestrator()
        orch.start_task(42)
        orch.start_task(7)
        assert orch.list_tasks() == ["ISSUE-42", "ISSUE-7"]


def _interrupt_after(store, index, output, status=TaskStatus.IN_PROGRESS):
    """Persist the record a crash leaves between completing a stage and advancing."""
    task = store.load("ISSUE-42")
    stage = task.stages[index]
    stage.status = StageStatus.COMPLETED
    stage.output = output
    stage.decision = extract_decision(output)
    task.current_stage = index
    task.status = status
    store.save(task)


class TestCrashResume:
    def test_completed_stage_is_not_rerun(self, build_orchestrator, invoker, store):
        orch = build_orchestrator()
        orch.start_task(42)
        _interrupt_after(store, 0, "## Summary\nOriginal intake report.")

        task = orch.run_next_stage("ISSUE-42")

        assert invoker.calls_for("intake") == []
        assert task.stages[0].output == "## Summary\nOriginal intake report."
        assert task.status == TaskStatus.PENDING
        assert task.current_stage == 1

    def test_completed_stage_on_pending_task(self, build_orchestrator, invoker, store):
        orch = build_orchestrator()
        orch.start_task(42)
        _interrupt_after(store, 0, "## Summary\nOriginal intake report.", status=TaskStatus.PENDING)

        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.COMPLETED
        assert invoker.calls_for("intake") == []
        assert task.stages[0].output == "## Summary\nOriginal intake report."

    def test_branching_uses_stored_decision(self, build_orchestrator, invoker, store):
        orch = build_orchestrator()
        orch.start_task(42)
        _interrupt_after(store, 0, "## Summary\nCannot reproduce.\n\nDecision: INVALID")

        task = orch.run_next_stage("ISSUE-42")

        assert task.status == TaskStatus.AWAITING_CLOSURE_APPROVAL
        assert task.current_stage == 0
        assert invoker.calls == []

    def test_post_stage_action_runs_on_resume(self, build_orchestrator, invoker, store, vcs):
        orch = build_orchestrator(pipeline=make_pipeline(surgeon={"action": StageAction.COMMIT_AND_OPEN_PR}))
        orch.start_task(42)
        for _ in range(3):
            orch.run_next_stage("ISSUE-42")
        vcs.dirty = True
        _interrupt_after(store, 3, "## Summary\nPatched the handler.")

        task = orch.run_next_stage("ISSUE-42")

        assert invoker.calls_for("surgeon") == []
        assert task.pr_number == 1000
        assert vcs.pushed == [task.branch_name]
        assert task.current_stage == 4

    def test_stage_left_in_progress_is_rerun(self, build_orchestrator, invoker, store):
        orch = build_orchestrator()
        orch.start_task(42)
        task = store.load("ISSUE-42")
        task.stages[0].status = StageStatus.IN_PROGRESS
        task.status = TaskStatus.IN_PROGRESS
        store.save(task)

        task = orch.run_next_stage("ISSUE-42")

        assert len(invoker.calls_for("intake")) == 1
        assert task.stages[0].status == StageStatus.COMPLETED
        assert task.current_stage == 1


class TestSelfHealing:
    def test_heals_then_retries(self, build_orchestrator, invoker, tracker):
        invoker.queue("detective", AgentInvocationError("timeout"), AgentInvocationError("timeout"), "## Summary\nok")
        invoker.queue("debugger", FIXED, FIXED)
        orch = build_orchestrator()
        orch.start_task(42)
        orch.run_next_stage("ISSUE-42")

        task = orch.run_next_stage("ISSUE-42")

        assert task.status == TaskStatus.PENDING
        assert task.current_stage == 2
        assert task.heal_attempts == {"1": 2}
        assert len(invoker.calls_for("detective")) == 3
        debugger_context = invoker.calls_for("debugger")[0].context
        assert debugger_context.extra["failed_stage"] == "Stage 1: Detective"
        assert debugger_context.extra["error_message"] == "timeout"
        bodies = tracker.comment_bodies(42)
        assert any("Self-Healing Attempt 1/3" in b for b in bodies)
        assert any("Self-Healing Attempt 2/3" in b for b in bodies)

    def test_failed_agent_result_heals(self, build_orchestrator, invoker):
        invoker.queue("intake", AgentResult(agent_name="intake", success=False, error="rate limited"))
        invoker.queue("debugger", FIXED)
        orch = build_orchestrator()
        orch.start_task(42)
        task = orch.run_next_stage("ISSUE-42")
        assert task.stages[0].status == StageStatus.COMPLETED
        assert task.heal_attempts == {"0": 1}

    def test_unhealed_failure_fails_task(self, build_orchestrator, invoker, tracker):
        invoker.queue("intake", AgentInvocationError("model missing"))
        invoker.queue("debugger", NOT_FIXED)
        orch = build_orchestrator()
        orch.start_task(42)

        task = orch.run_next_stage("ISSUE-42")

        assert task.status == TaskStatus.FAILED
        assert task.error == "model missing"
        assert task.stages[0].status == StageStatus.FAILED
        assert "failed" in tracker.issues[42].labels
        assert orch.get_task_state("ISSUE-42").status == TaskStatus.FAILED

    def test_at_most_three_attempts(self, build_orchestrator, invoker):
        invoker.queue("detective", *[AgentInvocationError("flaky")] * 5)
        invoker.queue("debugger", FIXED, FIXED, FIXED, FIXED)
        orch = build_orchestrator()
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.FAILED
        assert task.heal_attempts == {"1": 3}
        assert len(invoker.calls_for("debugger")) == 3
        assert len(invoker.calls_for("detective")) == 4


class TestBranching:
    def test_intake_invalid_halts_for_closure(self, build_orchestrator, invoker, tracker):
        invoker.queue("intake", "## Summary\nNot reproducible.\n\n## Decision: INVALID")
        orch = build_orchestrator()
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.AWAITING_CLOSURE_APPROVAL
        assert task.current_stage == 0
        assert task.stages[0].decision.kind.value == "INVALID"
        assert "awaiting-human-review" in tracker.issues[42].labels
        assert [c.agent_name for c in invoker.calls] == ["intake"]

    def test_halted_task_is_not_run(self, build_orchestrator, invoker):
        invoker.queue("intake", "Decision: REDIRECT")
        orch = build_orchestrator()
        orch.start_task(42)
        orch.run_next_stage("ISSUE-42")

        task = orch.run_next_stage("ISSUE-42")
        assert task.status == TaskStatus.AWAITING_CLOSURE_APPROVAL
        assert len(invoker.calls) == 1

    def test_approve_closure(self, build_orchestrator, invoker, tracker):
        invoker.queue("intake", "## Summary\nDuplicate.\n\nDecision: INVALID")
        orch = build_orchestrator()
        orch.start_task(42)
        orch.run_next_stage("ISSUE-42")

        task = orch.approve_closure("ISSUE-42")

        assert task.status == TaskStatus.COMPLETED
        issue = tracker.issues[42]
        assert issue.state == "closed"
        assert "closed-by-approval" in issue.labels
        assert "awaiting-human-review" not in issue.labels
        assert "Closed by Human Approval" in tracker.comment_bodies(42)[-1]

    def test_override_continues(self, build_orchestrator, invoker, tracker):
        invoker.queue("intake", "Decision: INVALID")
        orch = build_orchestrator(pipeline=make_pipeline(consensus_stage=None))
        orch.start_task(42)
        orch.run_next_stage("ISSUE-42")

        task = orch.override_halt("ISSUE-42")
        assert task.status == TaskStatus.PENDING
        assert task.current_stage == 1
        assert "human-override" in tracker.issues[42].labels

        assert orch.run_pipeline("ISSUE-42").status == TaskStatus.COMPLETED

    def test_closure_actions_require_halt(self, build_orchestrator):
        orch = build_orchestrator()
        orch.start_task(42)
        with pytest.raises(InvalidTransitionError):
            orch.approve_closure("ISSUE-42")
        with pytest.raises(InvalidTransitionError):
            orch.override_halt("ISSUE-42")
        with pytest.raises(InvalidTransitionError):
            orch.approve_stage("ISSUE-42")

    def test_request_approval_then_approve(self, build_orchestrator, invoker, tracker):
        invoker.queue("detective", "## Summary\nRisky.\n\n**Decision:** REQUEST_APPROVAL")
        orch = build_orchestrator()
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")
        assert task.status == TaskStatus.AWAITING_APPROVAL
        assert task.current_stage == 1
        assert "issueflow approve ISSUE-42" in tracker.comment_bodies(42)[-1]

        task = orch.approve_stage("ISSUE-42")
        assert task.status == TaskStatus.PENDING
        assert task.current_stage == 2

    def test_awaiting_approval_is_not_run(self, build_orchestrator, invoker):
        invoker.queue("detective", "## Summary\nRisky.\n\nDecision: REQUEST_APPROVAL")
        orch = build_orchestrator()
        orch.start_task(42)
        orch.run_pipeline("ISSUE-42")
        calls = len(invoker.calls)

        task = orch.run_next_stage("ISSUE-42")
        assert task.status == TaskStatus.AWAITING_APPROVAL
        assert task.current_stage == 1
        task = orch.run_pipeline("ISSUE-42")
        assert task.status == TaskStatus.AWAITING_APPROVAL
        assert task.current_stage == 1
        assert len(invoker.calls) == calls

    def test_stage_requiring_approval(self, build_orchestrator):
        orch = build_orchestrator(pipeline=make_pipeline(critic={"requires_approval": True}))
        orch.start_task(42)
        task = orch.run_pipeline("ISSUE-42")
        assert task.status == TaskStatus.AWAITING_APPROVAL
        assert task.current_stage == 4

        assert orch.approve_stage("ISSUE-42").status == TaskStatus.COMPLETED

    def test_unanimous_closure_auto_resolves(self, build_orchestrator, invoker, tracker):
        for agent in ("intake", "detective", "archaeologist"):
            invoker.queue(agent, "## Summary\nAlready fixed upstream.\n\nDecision: CLOSE")
        orch = build_orchestrator()
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.COMPLETED
        assert task.current_stage == 2
        assert tracker.issues[42].state == "closed"
        assert "auto-closed" in tracker.issues[42].labels
        assert invoker.calls_for("surgeon") == []

    def test_partial_closure_halts(self, build_orchestrator, invoker):
        invoker.queue("intake", "Decision: PROCEED")
        invoker.queue("detective", "Decision: CLOSE")
        invoker.queue("archaeologist", "Decision: CLOSE")
        orch = build_orchestrator()
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")
        assert task.status == TaskStatus.AWAITING_CLOSURE_APPROVAL
        assert task.current_stage == 2

    def test_unknown_decision_word_continues(self, build_orchestrator, invoker):
        invoker.queue("intake", "Decision: MAYBE")
        orch = build_orchestrator()
        orch.start_task(42)
        task = orch.run_next_stage("ISSUE-42")
        assert task.status == TaskStatus.PENDING
        assert task.stages[0].decision.raw == "MAYBE"

    def test_auto_resolve_callback_error_still_completes(self, build_orchestrator, invoker):
        def explode(task, reason):
            raise IssueTrackerError("tracker down")

        for agent in ("intake", "detective", "archaeologist"):
            invoker.queue(agent, "Decision: CLOSE")
        orch = build_orchestrator(auto_resolve=explode)
        orch.start_task(42)
        assert orch.run_pipeline("ISSUE-42").status == TaskStatus.COMPLETED

    def test_custom_auto_resolve_callback(self, build_orchestrator, invoker, tracker):
        resolved = []
        for agent in ("intake", "detective", "archaeologist"):
            invoker.queue(agent, "Decision: CLOSE")
        orch = build_orchestrator(auto_resolve=lambda task, reason: resolved.append((task.task_id, reason)))
        orch.start_task(42)
        orch.run_pipeline("ISSUE-42")
        assert resolved == [("ISSUE-42", "All 3 consulted agents recommend closing this issue")]
        assert tracker.issues[42].state == "open"


class TestDecomposition:
    def test_decomposes_after_intake(self, build_orchestrator, invoker):
        decomposer = StaticDecomposer(decompose_into=["ISSUE-43", "ISSUE-44"])
        orch = build_orchestrator(decomposer=decomposer, enable_auto_decomposition=True)
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.DECOMPOSED
        assert task.child_task_ids == ["ISSUE-43", "ISSUE-44"]
        assert decomposer.decomposed == ["ISSUE-42"]
        assert [c.agent_name for c in invoker.calls] == ["intake"]

    def test_disabled_flag_skips_decomposer(self, build_orchestrator):
        decomposer = StaticDecomposer(decompose_into=["ISSUE-43"])
        orch = build_orchestrator(decomposer=decomposer)
        orch.start_task(42)
        assert orch.run_pipeline("ISSUE-42").status == TaskStatus.COMPLETED
        assert decomposer.decomposed == []

    def test_decomposer_error_continues(self, build_orchestrator):
        decomposer = StaticDecomposer(error=OrchestratorError("plan unusable"))
        orch = build_orchestrator(decomposer=decomposer, enable_auto_decomposition=True)
        orch.start_task(42)
        task = orch.run_next_stage("ISSUE-42")
        assert task.status == TaskStatus.PENDING
        assert task.current_stage == 1

    def test_branching_wins_over_decomposition(self, build_orchestrator, invoker):
        invoker.queue("intake", "Decision: INVALID")
        decomposer = StaticDecomposer(decompose_into=["ISSUE-43"])
        orch = build_orchestrator(decomposer=decomposer, enable_auto_decomposition=True)
        orch.start_task(42)
        task = orch.run_next_stage("ISSUE-42")
        assert task.status == TaskStatus.AWAITING_CLOSURE_APPROVAL
        assert decomposer.decomposed == []


class TestStageActions:
    def test_production_failure_fails_task(self, build_orchestrator, invoker, tracker):
        pipeline = make_pipeline(critic={"action": StageAction.DEPLOY_PRODUCTION})
        orch = build_orchestrator(
            pipeline=pipeline, deployment_platform=InMemoryDeploymentPlatform(healthy=False),
        )
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.FAILED
        assert task.current_stage == 4
        assert task.stages[4].status == StageStatus.FAILED
        assert task.heal_attempts == {}
        assert invoker.calls_for("debugger") == []
        assert "deployment-failed" in tracker.issues[42].labels

    def test_pr_opened_after_implementation(self, build_orchestrator, vcs, tracker):
        vcs.dirty = True
        pipeline = make_pipeline(surgeon={"action": StageAction.COMMIT_AND_OPEN_PR})
        orch = build_orchestrator(pipeline=pipeline)
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.COMPLETED
        assert task.pr_number == 1000
        assert vcs.pushed == [task.branch_name]

    def test_todos_carried_between_stages(self, build_orchestrator, invoker, tmp_path):
        def surgeon(context, sandbox):
            sandbox.execute("todo_add", {"content": "Patch click handler", "priority": "high"})
            result = sandbox.execute("write_file", {"path": "src/login.py", "content": "def login(): ..."})
            assert result.success
            return "## Summary\nPatched."

        invoker.queue("surgeon", surgeon)
        orch = build_orchestrator(pipeline=make_pipeline(surgeon={"tools_enabled": True}))
        orch.start_task(42)

        task = orch.run_pipeline("ISSUE-42")

        assert task.status == TaskStatus.COMPLETED
        assert (tmp_path / "repo" / "src" / "login.py").read_text() == "def login(): ..."
        assert [t.content for t in task.todo_state.todos] == ["Patch click handler"]
        assert invoker.calls_for("surgeon")[0].sandbox is not None
        assert invoker.calls_for("critic")[0].sandbox is None
        critic_context = invoker.calls_for("critic")[0].context
        assert critic_context.todo_state.todos[0].content == "Patch click handler"
