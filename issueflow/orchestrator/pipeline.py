"""Stage pipeline definition for IssueFlow.

A PipelineDefinition is the ordered, immutable list of stages the
orchestrator walks a task through, plus the stage indices at which
branching rules apply. The orchestrator is parameterised by it, so
pipelines of any length can be defined without touching the engine.
"""

from __future__ import annotations

import enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from issueflow.core.exceptions import ConfigError


class StageAction(str, enum.Enum):
    """Side effect run after a stage completes successfully."""
    COMMIT_AND_OPEN_PR = "commit_and_open_pr"
    DEPLOY_STAGING = "deploy_staging"
    DEPLOY_PRODUCTION = "deploy_production"
    UPDATE_KNOWLEDGE_BASE = "update_knowledge_base"


class StageDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    agent_name: str
    requires_approval: bool = False
    artifact_name: str
    tools_enabled: bool = False
    action: Optional[StageAction] = None


class PipelineDefinition(BaseModel):
    """Ordered stages plus the indices the branching rules look at."""
    model_config = ConfigDict(frozen=True)

    stages: tuple[StageDefinition, ...]
    intake_stage: int = 0
    consensus_stage: Optional[int] = None
    consensus_sources: tuple[int, ...] = Field(default_factory=tuple)

    @model_validator(mode="after")
    def _check_indices(self) -> "PipelineDefinition":
        count = len(self.stages)
        if count == 0:
            raise ValueError("Pipeline must define at least one stage")
        if not 0 <= self.intake_stage < count:
            raise ValueError(f"intake_stage {self.intake_stage} out of range")
        if self.consensus_stage is not None:
            if not 0 <= self.consensus_stage < count:
                raise ValueError(f"consensus_stage {self.consensus_stage} out of range")
            for source in self.consensus_sources:
                if not 0 <= source <= self.consensus_stage:
                    raise ValueError(
                        f"consensus source {source} must not come after stage {self.consensus_stage}"
                    )
        if sum(1 for s in self.stages if s.tools_enabled) > 1:
            raise ValueError("At most one stage may have tools enabled")
        return self

    def __len__(self) -> int:
        return len(self.stages)

    def __getitem__(self, index: int) -> StageDefinition:
        return self.stages[index]

    @property
    def last_index(self) -> int:
        return len(self.stages) - 1

    def with_consensus(
        self,
        consensus_stage: Optional[int],
        consensus_sources: list[int] | tuple[int, ...],
    ) -> "PipelineDefinition":
        """Return a copy with different consensus settings."""
        try:
            return PipelineDefinition(
                stages=self.stages,
                intake_stage=self.intake_stage,
                consensus_stage=consensus_stage,
                consensus_sources=tuple(consensus_sources),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid consensus settings: {e}") from e


def default_pipeline() -> PipelineDefinition:
    """The fourteen-stage issue resolution pipeline."""
    stages = (
        StageDefinition(name="Stage 0: Intake & Validation", agent_name="intake",
                        artifact_name="intake-analysis.md"),
        StageDefinition(name="Stage 1: Triage", agent_name="detective",
                        artifact_name="triage-report.md"),
        StageDefinition(name="Stage 2: Root Cause Analysis", agent_name="archaeologist",
                        artifact_name="root-cause-analysis.md"),
        StageDefinition(name="Stage 3: Implementation", agent_name="surgeon",
                        artifact_name="implementation-plan.md", tools_enabled=True,
                        action=StageAction.COMMIT_AND_OPEN_PR),
        StageDefinition(name="Stage 4: Code Review", agent_name="critic",
                        artifact_name="code-review.md"),
        StageDefinition(name="Stage 5: Testing", agent_name="validator",
                        artifact_name="test-results.md"),
        StageDefinition(name="Stage 6: QA", agent_name="skeptic",
                        artifact_name="qa-report.md"),
        StageDefinition(name="Stage 7: Staging Deployment", agent_name="gatekeeper",
                        artifact_name="staging-deployment.md",
                        action=StageAction.DEPLOY_STAGING),
        StageDefinition(name="Stage 8: UAT", agent_name="advocate",
                        artifact_name="uat-results.md"),
        StageDefinition(name="Stage 9: Production Planning", agent_name="planner",
                        artifact_name="production-plan.md"),
        StageDefinition(name="Stage 10: Production Deployment", agent_name="commander",
                        artifact_name="deployment-log.md",
                        action=StageAction.DEPLOY_PRODUCTION),
        StageDefinition(name="Stage 11: Monitoring", agent_name="guardian",
                        artifact_name="monitoring-report.md"),
        StageDefinition(name="Stage 12: Documentation", agent_name="historian",
                        artifact_name="retrospective.md"),
        StageDefinition(name="Stage 13: Wiki Documentation", agent_name="archivist",
                        artifact_name="wiki-updates.md",
                        action=StageAction.UPDATE_KNOWLEDGE_BASE),
    )
    return PipelineDefinition(
        stages=stages,
        intake_stage=0,
        consensus_stage=2,
        consensus_sources=(0, 1, 2),
    )
