"""Splitting oversized issues into sub-issues.

AgentDecomposer is the production Decomposer: a cheap keyword screen
over the intake report decides whether the decomposer agent is worth
consulting, and the agent's plan is turned into child issues on the
tracker. The orchestrator only calls it when auto-decomposition is on.
"""

from __future__ import annotations

import logging
import re

from issueflow.core.exceptions import AgentInvocationError, OrchestratorError
from issueflow.core.models import AgentContext, Task, task_id_for_issue
from issueflow.integrations.protocols import AgentInvoker, IssueTracker
from issueflow.llm.response_parser import (
    DecompositionPlan,
    SubTask,
    parse_decomposition,
    validate_decomposition,
)

logger = logging.getLogger("issueflow.orchestrator.decomposition")

COMPLEXITY_KEYWORDS = [
    "multiple tasks", "several tasks", "and also", "additionally", "furthermore",
    "multiple components", "complex issue", "various aspects", "different areas",
]

SUB_ISSUE_LABEL = "sub-issue"
_NOT_INHERITED = {"in-progress", "completed", "awaiting-human-review", "decomposed", SUB_ISSUE_LABEL}


def detect_complexity_signals(intake_output: str) -> bool:
    """Fast, deterministic screen for reports describing several pieces of work."""
    lowered = intake_output.lower()
    if any(keyword in lowered for keyword in COMPLEXITY_KEYWORDS):
        return True
    bullets = len(re.findall(r"^[-*]\s+", intake_output, re.MULTILINE))
    if bullets >= 4:
        return True
    return len(re.findall(r"\band\b", intake_output, re.IGNORECASE)) >= 3


def format_sub_issue_body(sub_task: SubTask, parent: Task) -> str:
    criteria = "\n".join(f"- [ ] {c}" for c in sub_task.acceptance_criteria)
    excerpt = parent.body[:500] + "..." if len(parent.body) > 500 else parent.body
    return (
        f"**Part of:** #{parent.issue_number}\n\n"
        f"## Task Description\n{sub_task.description}\n\n"
        f"## Acceptance Criteria\n{criteria or '- [ ] Complete implementation'}\n\n"
        f"## Context from Parent Issue\n**Parent:** {parent.title}\n\n{excerpt}\n"
    )


class AgentDecomposer:
    """Decomposer backed by the ``decomposer`` agent and the issue tracker."""

    def __init__(
        self,
        invoker: AgentInvoker,
        issue_tracker: IssueTracker,
        agent_name: str = "decomposer",
        max_sub_tasks: int = 5,
    ):
        self.invoker = invoker
        self.issue_tracker = issue_tracker
        self.agent_name = agent_name
        self.max_sub_tasks = max_sub_tasks
        self._plans: dict[str, DecompositionPlan] = {}

    def should_decompose(self, task: Task, intake_output: str) -> bool:
        if SUB_ISSUE_LABEL in task.labels or task.parent_task_id:
            logger.info("%s is already a sub-issue, not decomposing", task.task_id)
            return False
        if not detect_complexity_signals(intake_output):
            logger.debug("%s: no complexity signals in intake output", task.task_id)
            return False

        logger.info("%s: complexity signals detected, consulting %s", task.task_id, self.agent_name)
        plan = self._plan(task)
        errors = validate_decomposition(plan, self.max_sub_tasks)
        if errors:
            logger.warning("%s: decomposition plan rejected: %s", task.task_id, "; ".join(errors))
            return False
        return plan.should_decompose

    def decompose(self, task: Task) -> list[str]:
        """Create one sub-issue per planned sub-task and return their task ids."""
        plan = self._plans.pop(task.task_id, None) or self._plan(task)
        errors = validate_decomposition(plan, self.max_sub_tasks)
        if errors or not plan.should_decompose:
            raise OrchestratorError(f"Decomposition plan unusable: {'; '.join(errors) or 'PROCEED'}")

        inherited = [label for label in task.labels if label not in _NOT_INHERITED]
        total = len(plan.sub_tasks)
        created: list[tuple[int, str]] = []
        for i, sub_task in enumerate(plan.sub_tasks, start=1):
            issue = self.issue_tracker.create_issue(
                title=f"[Parent #{task.issue_number}] [Sub {i}/{total}] {sub_task.title}",
                body=format_sub_issue_body(sub_task, task),
                labels=[SUB_ISSUE_LABEL, f"parent-{task.issue_number}", *inherited],
            )
            created.append((issue.number, sub_task.title))
            logger.info("%s: created sub-issue #%d (%d/%d)", task.task_id, issue.number, i, total)

        listing = "\n".join(f"- #{number} - {title}" for number, title in created)
        self.issue_tracker.add_comment(
            task.issue_number,
            "\U0001f500 **Issue Decomposed**\n\n"
            f"This issue has been broken down into {total} sub-tasks. "
            "Each sub-issue will go through the full pipeline independently.\n\n"
            f"**Sub-issues:**\n{listing}",
        )
        self.issue_tracker.add_label(task.issue_number, "decomposed")
        return [task_id_for_issue(number) for number, _ in created]

    def _plan(self, task: Task) -> DecompositionPlan:
        context = AgentContext(
            task_id=task.task_id,
            issue_number=task.issue_number,
            issue_title=task.title,
            issue_body=task.body,
            issue_url=task.url,
            extra={"max_sub_issues": self.max_sub_tasks},
        )
        result = self.invoker.invoke(self.agent_name, context)
        if not result.success:
            raise AgentInvocationError(f"{self.agent_name} agent failed: {result.error}")
        plan = parse_decomposition(result.output)
        self._plans[task.task_id] = plan
        return plan
