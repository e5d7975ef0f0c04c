"""Pydantic data model for pipelines, runs, environments and deployments."""

from conveyor.models.artifact import Artifact, DeploymentRecord
from conveyor.models.environment import Environment
from conveyor.models.pipeline import (
    Backoff,
    FailurePolicy,
    PipelineDefinition,
    RetryPolicy,
    Stage,
    StageGroup,
    StageKind,
)
from conveyor.models.run import Outcome, OutcomeStatus, RunState, RunStatus

__all__ = [
    "Artifact",
    "Backoff",
    "DeploymentRecord",
    "Environment",
    "FailurePolicy",
    "Outcome",
    "OutcomeStatus",
    "PipelineDefinition",
    "RetryPolicy",
    "RunState",
    "RunStatus",
    "Stage",
    "StageGroup",
    "StageKind",
]
