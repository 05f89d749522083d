"""Abstract base for the pipeline agents.

An agent turns one stage's AgentContext into an AgentResult. The base class
owns timing, logging and the per-agent counters; subclasses only write
process().
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from issueflow.core.models import AgentContext, AgentResult
from issueflow.tools.sandbox import ToolSandbox


class BaseAgent(ABC):
    """One named agent. Call run(); implement process()."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(f"issueflow.agent.{name.lower()}")
        self._metrics: dict[str, Any] = {
            "total_processed": 0,
            "total_errors": 0,
            "last_duration_seconds": 0.0,
        }

    @abstractmethod
    def process(self, context: AgentContext, sandbox: Optional[ToolSandbox] = None) -> AgentResult:
        """Produce the stage report. ``sandbox`` is set only for the tool stage."""

    def run(self, context: AgentContext, sandbox: Optional[ToolSandbox] = None) -> AgentResult:
        """Time and log process(). An exception becomes a failed AgentResult."""
        self.logger.info(
            "[%s] %s stage %d%s",
            self.name, context.task_id, context.stage_index, " (tools)" if sandbox is not None else "",
        )
        started = time.monotonic()
        try:
            result = self.process(context, sandbox)
            self._metrics["total_processed"] += 1
        except Exception as e:
            self._metrics["total_errors"] += 1
            self.logger.error("[%s] Failed: %s", self.name, e, exc_info=True)
            result = AgentResult(agent_name=self.name, success=False, error=str(e))
        elapsed = time.monotonic() - started

        result.usage.duration_ms = int(elapsed * 1000)
        self._metrics["last_duration_seconds"] = elapsed
        self.logger.info(
            "[%s] Done in %.2fs: success=%s tokens=%d",
            self.name, elapsed, result.success, result.usage.total_tokens,
        )
        return result

    def get_metrics(self) -> dict[str, Any]:
        return dict(self._metrics)
