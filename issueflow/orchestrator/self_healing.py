"""Bounded self-healing for failed stages.

When a stage's agent invocation fails, the orchestrator asks the
SelfHealingController for a recovery attempt before failing the task.
Attempts are counted per stage index on the task record itself
(Task.heal_attempts), so the limit survives restarts.

How recovery happens is a pluggable RecoveryStrategy:
- AgentRecoveryStrategy asks the debugger agent to diagnose and fix.
- BackoffRecoveryStrategy waits with exponential backoff (transient errors).
- ChainedRecoveryStrategy tries strategies in order until one heals.
"""

from __future__ import annotations

import logging
import time
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable

from issueflow.core.models import AgentContext, Task
from issueflow.integrations.protocols import AgentInvoker
from issueflow.llm.response_parser import extract_section

logger = logging.getLogger("issueflow.orchestrator.self_healing")

DEFAULT_MAX_ATTEMPTS = 3
SUCCESS_MARKERS = ("fixed_automatically", "status:** fixed", "fix applied")


@dataclass
class RecoveryRequest:
    """Everything a strategy needs to attempt recovery of one failure."""
    task: Task
    stage_index: int
    stage_name: str
    agent_name: str
    error_message: str
    error_trace: str
    context: AgentContext
    attempt: int


@dataclass
class RecoveryResult:
    healed: bool
    summary: str = ""
    output: str = ""
    strategy: str = ""


@dataclass
class HealingOutcome:
    healed: bool
    attempt: int
    max_attempts: int
    exhausted: bool = False
    summary: str = ""
    strategy: str = ""
    results: list[RecoveryResult] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class RecoveryStrategy(ABC):
    """One way of recovering from a failed stage."""

    name: str = "recovery"

    @abstractmethod
    def recover(self, request: RecoveryRequest) -> RecoveryResult:
        """Attempt recovery. Must report failure as healed=False, not raise."""


class AgentRecoveryStrategy(RecoveryStrategy):
    """Invoke a dedicated recovery agent and look for a success marker."""

    name = "agent"

    def __init__(
        self,
        invoker: AgentInvoker,
        agent_name: str = "debugger",
        success_markers: tuple[str, ...] = SUCCESS_MARKERS,
    ):
        self.invoker = invoker
        self.agent_name = agent_name
        self.success_markers = tuple(m.lower() for m in success_markers)

    def recover(self, request: RecoveryRequest) -> RecoveryResult:
        context = request.context.model_copy(deep=True)
        context.extra.update({
            "failed_stage": request.stage_name,
            "failed_agent_name": request.agent_name,
            "error_message": request.error_message,
            "error_stack": request.error_trace,
            "heal_attempt": request.attempt,
        })

        try:
            result = self.invoker.invoke(self.agent_name, context)
        except Exception as e:
            logger.error("Recovery agent %s raised: %s", self.agent_name, e)
            return RecoveryResult(
                healed=False, summary=f"The self-healing process itself failed: {e}", strategy=self.name,
            )

        if not result.success:
            logger.warning("Recovery agent %s failed: %s", self.agent_name, result.error)
            return RecoveryResult(
                healed=False,
                summary=f"Debugger could not resolve the issue: {result.error}",
                output=result.output,
                strategy=self.name,
            )

        lowered = result.output.lower()
        healed = any(marker in lowered for marker in self.success_markers)
        return RecoveryResult(
            healed=healed,
            summary=extract_fix_summary(result.output),
            output=result.output,
            strategy=self.name,
        )


class BackoffRecoveryStrategy(RecoveryStrategy):
    """Wait with exponential backoff, then report healed so the stage is retried."""

    name = "backoff"

    def __init__(
        self,
        base_seconds: float = 2.0,
        max_seconds: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self._sleep = sleep

    def recover(self, request: RecoveryRequest) -> RecoveryResult:
        delay = _backoff_delay(request.attempt - 1, self.base_seconds, self.max_seconds)
        logger.info("Backing off %.1fs before retrying %s", delay, request.stage_name)
        self._sleep(delay)
        return RecoveryResult(
            healed=True, summary=f"Retrying after {delay:.1f}s backoff", strategy=self.name,
        )


class ChainedRecoveryStrategy(RecoveryStrategy):
    """Try each strategy in order; the first one that heals wins."""

    name = "chain"

    def __init__(self, strategies: list[RecoveryStrategy]):
        if not strategies:
            raise ValueError("ChainedRecoveryStrategy needs at least one strategy")
        self.strategies = strategies

    def recover(self, request: RecoveryRequest) -> RecoveryResult:
        last = RecoveryResult(healed=False, strategy=self.name)
        for strategy in self.strategies:
            try:
                last = strategy.recover(request)
            except Exception as e:
                logger.error("Recovery strategy %s raised: %s", strategy.name, e)
                last = RecoveryResult(healed=False, summary=str(e), strategy=strategy.name)
            if last.healed:
                return last
        return last


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------

class SelfHealingController:
    """Caps recovery attempts per (task, stage index) and runs the strategy."""

    def __init__(self, strategy: RecoveryStrategy, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        self.strategy = strategy
        self.max_attempts = max_attempts

    def attempts_for(self, task: Task, stage_index: int) -> int:
        return task.heal_attempts.get(str(stage_index), 0)

    def can_attempt(self, task: Task, stage_index: int) -> bool:
        return self.attempts_for(task, stage_index) < self.max_attempts

    def attempt(
        self,
        task: Task,
        stage_index: int,
        error: BaseException | str,
        context: AgentContext,
        stage_name: str = "",
        agent_name: str = "",
    ) -> HealingOutcome:
        """Run one recovery attempt, or refuse once the cap is reached.

        The attempt counter on ``task`` is incremented before the strategy
        runs; the caller is responsible for persisting the task.
        """
        used = self.attempts_for(task, stage_index)
        if used >= self.max_attempts:
            logger.warning(
                "%s stage %d: max heal attempts (%d) reached, giving up",
                task.task_id, stage_index, self.max_attempts,
            )
            return HealingOutcome(
                healed=False, attempt=used, max_attempts=self.max_attempts, exhausted=True,
                summary=f"Max self-healing attempts ({self.max_attempts}) reached",
            )

        attempt = used + 1
        task.heal_attempts[str(stage_index)] = attempt
        message, trace = _describe_error(error)
        logger.info(
            "%s stage %d: self-healing attempt %d/%d (%s)",
            task.task_id, stage_index, attempt, self.max_attempts, message,
        )

        request = RecoveryRequest(
            task=task,
            stage_index=stage_index,
            stage_name=stage_name,
            agent_name=agent_name,
            error_message=message,
            error_trace=trace,
            context=context,
            attempt=attempt,
        )
        try:
            result = self.strategy.recover(request)
        except Exception as e:
            logger.error("Recovery strategy %s raised: %s", self.strategy.name, e)
            result = RecoveryResult(healed=False, summary=str(e), strategy=self.strategy.name)

        if result.healed:
            logger.info("%s stage %d: healed by %s", task.task_id, stage_index, result.strategy)
        else:
            logger.warning("%s stage %d: not healed", task.task_id, stage_index)

        return HealingOutcome(
            healed=result.healed,
            attempt=attempt,
            max_attempts=self.max_attempts,
            summary=result.summary,
            strategy=result.strategy,
            results=[result],
        )


def extract_fix_summary(output: str, limit: int = 1000) -> str:
    """Pull the most relevant section out of a recovery agent's report."""
    for heading in ("Fix Applied", "Root Cause", "Error Summary"):
        section = extract_section(output, heading)
        if section:
            return section[:limit]
    return output[:500] + ("..." if len(output) > 500 else "")


def _describe_error(error: BaseException | str) -> tuple[str, str]:
    if isinstance(error, BaseException):
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return str(error) or type(error).__name__, trace
    return str(error), ""


def _backoff_delay(attempt: int, base_seconds: float = 2.0, max_seconds: float = 60.0) -> float:
    """Exponential backoff: 2s, 4s, 8s, ..."""
    return min(base_seconds * (2 ** max(attempt, 0)), max_seconds)
