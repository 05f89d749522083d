"""Tests for issueflow/orchestrator/decomposition.py: sub-issue creation."""

import pytest

from issueflow.core.exceptions import AgentInvocationError, OrchestratorError
from issueflow.core.models import AgentResult
from issueflow.integrations.memory import ScriptedAgentInvoker
from issueflow.llm.response_parser import SubTask
from issueflow.orchestrator.decomposition import (
    AgentDecomposer,
    detect_complexity_signals,
    format_sub_issue_body,
)
from tests.conftest import make_task

PLAN = """## Decision: DECOMPOSE

## Reasoning
Two separate fixes.

### Sub-Task 1: Fix login redirect
**Description:** Redirect users to the dashboard after login.
**Acceptance Criteria:**
- [ ] Redirect works
**Estimated Complexity:** Low

### Sub-Task 2: Fix logout
**Description:** Clear the session cookie on logout.
**Acceptance Criteria:**
- [ ] Cookie cleared
**Estimated Complexity:** Medium
"""

COMPLEX_INTAKE = "## Summary\nThis covers multiple components and also the API."


class TestComplexitySignals:
    def test_keywords(self):
        assert detect_complexity_signals("This touches multiple components.")

    def test_many_bullets(self):
        assert detect_complexity_signals("- a\n- b\n* c\n- d\n")

    def test_many_ands(self):
        assert detect_complexity_signals("login and logout and signup and reset")

    def test_simple_report(self):
        assert not detect_complexity_signals("## Summary\nA single typo in the footer.")


class TestSubIssueBody:
    def test_body_links_parent(self):
        parent = make_task(body="b" * 600)
        body = format_sub_issue_body(
            SubTask(title="t", description="Do the thing", acceptance_criteria=["done"]), parent,
        )
        assert body.startswith("**Part of:** #42")
        assert "- [ ] done" in body
        assert "b" * 500 + "..." in body

    def test_default_criteria(self):
        body = format_sub_issue_body(SubTask(title="t", description="Do the thing"), make_task())
        assert "- [ ] Complete implementation" in body


class TestAgentDecomposer:
    def test_simple_intake_skips_agent(self, tracker):
        invoker = ScriptedAgentInvoker()
        decomposer = AgentDecomposer(invoker, tracker)
        assert not decomposer.should_decompose(make_task(), "Single small fix.")
        assert invoker.calls == []

    def test_sub_issue_never_decomposed(self, tracker):
        invoker = ScriptedAgentInvoker({"decomposer": [PLAN]})
        decomposer = AgentDecomposer(invoker, tracker)
        assert not decomposer.should_decompose(make_task(labels=["sub-issue"]), COMPLEX_INTAKE)
        assert not decomposer.should_decompose(make_task(parent_task_id="ISSUE-1"), COMPLEX_INTAKE)

    def test_decompose_creates_sub_issues(self, tracker):
        invoker = ScriptedAgentInvoker({"decomposer": [PLAN]})
        decomposer = AgentDecomposer(invoker, tracker)
        task = make_task(labels=["bug", "in-progress", "stage-1"])

        assert decomposer.should_decompose(task, COMPLEX_INTAKE)
        child_ids = decomposer.decompose(task)

        assert child_ids == ["ISSUE-43", "ISSUE-44"]
        assert len(invoker.calls_for("decomposer")) == 1
        first = tracker.issues[43]
        assert first.title == "[Parent #42] [Sub 1/2] Fix login redirect"
        assert first.labels == ["sub-issue", "parent-42", "bug", "stage-1"]
        assert "decomposed" in tracker.issues[42].labels
        comment = tracker.comment_bodies(42)[-1]
        assert "#43 - Fix login redirect" in comment
        assert "#44 - Fix logout" in comment

    def test_proceed_plan(self, tracker):
        invoker = ScriptedAgentInvoker({"decomposer": ["## Decision: PROCEED\n\n## Reasoning\nSmall."]})
        decomposer = AgentDecomposer(invoker, tracker)
        assert not decomposer.should_decompose(make_task(), COMPLEX_INTAKE)

    def test_invalid_plan_rejected(self, tracker):
        invoker = ScriptedAgentInvoker({"decomposer": ["## Decision: DECOMPOSE\nno sub tasks"]})
        decomposer = AgentDecomposer(invoker, tracker)
        assert not decomposer.should_decompose(make_task(), COMPLEX_INTAKE)

    def test_decompose_unusable_plan_raises(self, tracker):
        invoker = ScriptedAgentInvoker({"decomposer": ["## Decision: PROCEED"]})
        with pytest.raises(OrchestratorError, match="unusable"):
            AgentDecomposer(invoker, tracker).decompose(make_task())

    def test_agent_failure_raises(self, tracker):
        invoker = ScriptedAgentInvoker({
            "decomposer": [AgentResult(agent_name="decomposer", success=False, error="no model")],
        })
        with pytest.raises(AgentInvocationError, match="no model"):
            AgentDecomposer(invoker, tracker).should_decompose(make_task(), COMPLEX_INTAKE)
