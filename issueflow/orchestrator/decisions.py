"""Decision extraction and branching rules.

Agents signal control flow with a "Decision: <WORD>" marker somewhere in
their free-text output. extract_decision() turns that text into a
StageDecision exactly once, when the stage completes; BranchingPolicy
only ever reads the stored value.

Matching is a best-effort heuristic: text that merely mentions
"Decision: CLOSE" in passing is indistinguishable from an assertion.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from issueflow.core.models import DecisionKind, StageDecision, StageStatus, Task
from issueflow.orchestrator.pipeline import PipelineDefinition

logger = logging.getLogger("issueflow.orchestrator.decisions")

# Tolerates "## Decision: X", "**Decision:** X" and "**Decision**: X"
DECISION_PATTERN = re.compile(r"\bDecision\**\s*:\s*\**\s*(\w+)", re.IGNORECASE)

DEFAULT_INTAKE_HALT = frozenset({DecisionKind.REDIRECT, DecisionKind.INVALID})
CLOSURE_SIGNALS = frozenset({DecisionKind.CLOSE, DecisionKind.INVALID, DecisionKind.REDIRECT})

_KNOWN = {kind.value: kind for kind in DecisionKind if kind != DecisionKind.ABSENT}


def extract_decision(text: Optional[str]) -> StageDecision:
    """Return the first decision marker in text, or ABSENT.

    Unknown words after the marker are kept in ``raw`` but map to ABSENT.
    """
    if not text:
        return StageDecision()
    match = DECISION_PATTERN.search(text)
    if not match:
        return StageDecision()
    raw = match.group(1).upper()
    return StageDecision(kind=_KNOWN.get(raw, DecisionKind.ABSENT), raw=raw)


class BranchAction(str, enum.Enum):
    CONTINUE = "continue"
    HALT_FOR_CLOSURE = "halt_for_closure"
    HALT_FOR_APPROVAL = "halt_for_approval"
    AUTO_RESOLVE = "auto_resolve"


@dataclass(frozen=True)
class BranchOutcome:
    action: BranchAction
    reason: str = ""

    @property
    def halts(self) -> bool:
        return self.action != BranchAction.CONTINUE


CONTINUE = BranchOutcome(BranchAction.CONTINUE)


class BranchingPolicy:
    """Evaluates stored stage decisions at the pipeline's branching indices."""

    def __init__(
        self,
        pipeline: PipelineDefinition,
        intake_halt_decisions: Iterable[DecisionKind | str] = DEFAULT_INTAKE_HALT,
        closure_signals: Iterable[DecisionKind] = CLOSURE_SIGNALS,
    ):
        self.pipeline = pipeline
        self.intake_halt_decisions = frozenset(DecisionKind(d) for d in intake_halt_decisions)
        self.closure_signals = frozenset(closure_signals)

    def evaluate(self, task: Task, stage_index: int) -> BranchOutcome:
        """Decide what happens after the stage at stage_index completed."""
        decision = _stored_decision(task, stage_index)

        if stage_index == self.pipeline.intake_stage and decision.kind in self.intake_halt_decisions:
            logger.info("%s: intake decision %s halts the pipeline", task.task_id, decision.kind.value)
            return BranchOutcome(
                BranchAction.HALT_FOR_CLOSURE,
                f"Intake agent recommends: {decision.kind.value}",
            )

        if decision.kind == DecisionKind.REQUEST_APPROVAL:
            return BranchOutcome(
                BranchAction.HALT_FOR_APPROVAL,
                f"{self.pipeline[stage_index].agent_name} requested human approval",
            )

        if stage_index == self.pipeline.consensus_stage:
            return self._evaluate_consensus(task)

        return CONTINUE

    def closure_votes(self, task: Task) -> tuple[int, int]:
        """Return (agreeing, total) closure votes among the consensus sources."""
        sources = self.pipeline.consensus_sources
        agreeing = sum(
            1 for index in sources
            if _stored_decision(task, index).kind in self.closure_signals
        )
        return agreeing, len(sources)

    def _evaluate_consensus(self, task: Task) -> BranchOutcome:
        agreeing, total = self.closure_votes(task)
        logger.info("%s: %d/%d consensus sources signal closure", task.task_id, agreeing, total)
        if total == 0 or agreeing == 0:
            return CONTINUE
        if agreeing == total:
            return BranchOutcome(
                BranchAction.AUTO_RESOLVE,
                f"All {total} consulted agents recommend closing this issue",
            )
        return BranchOutcome(
            BranchAction.HALT_FOR_CLOSURE,
            f"{agreeing} of {total} agents recommend closing this issue",
        )


def _stored_decision(task: Task, index: int) -> StageDecision:
    if not 0 <= index < len(task.stages):
        return StageDecision()
    stage = task.stages[index]
    if stage.status != StageStatus.COMPLETED or stage.decision is None:
        return StageDecision()
    return stage.decision
