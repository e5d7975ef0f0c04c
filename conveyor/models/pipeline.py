"""PipelineDefinition — ordered stage groups, each a set of concurrent stages.

Definitions are frozen once loaded: a run never mutates the definition it
was started with, and the same Stage objects are reused across runs.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, model_validator

from conveyor.config import (
    DEFAULT_ATTEMPTS,
    DEFAULT_DELAY_SECONDS,
    DEFAULT_EXPECTED_STATUS,
    DEFAULT_MAX_DELAY_SECONDS,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
    VERIFY_ATTEMPTS,
    VERIFY_DELAY_SECONDS,
)
from conveyor.errors import DefinitionError


class StageKind(str, Enum):
    """The unit of work a stage performs."""

    VALIDATE = "validate"
    BUILD = "build"
    SCAN = "scan"
    DEPLOY = "deploy"
    VERIFY = "verify"


class FailurePolicy(str, Enum):
    """What an exhausted stage does to its run."""

    FATAL = "fatal"
    WARN_AND_CONTINUE = "warn-and-continue"


class Backoff(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class RetryPolicy(BaseModel):
    """Fixed attempt budget with fixed or exponential delay between attempts."""

    model_config = ConfigDict(frozen=True)

    attempts: int = Field(default=DEFAULT_ATTEMPTS, ge=1)
    delay: float = Field(default=DEFAULT_DELAY_SECONDS, ge=0)
    backoff: Backoff = Backoff.FIXED
    max_delay: float = Field(default=DEFAULT_MAX_DELAY_SECONDS, ge=0)

    @classmethod
    def readiness(cls) -> RetryPolicy:
        """Budget used by verify stages when none is configured."""
        return cls(attempts=VERIFY_ATTEMPTS, delay=VERIFY_DELAY_SECONDS)

    def delay_after(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        if self.backoff == Backoff.EXPONENTIAL:
            return min(self.delay * (2 ** (attempt - 1)), self.max_delay)
        return self.delay


class Stage(BaseModel):
    """A single unit of pipeline work.

    Parameters
    ----------
    operation:
        Operation reference.  ``shell:<command>`` runs a subprocess; any
        other non-empty value names a registered operation.  Build, scan
        and deploy stages may leave it empty to use the configured
        collaborator.
    environment:
        Target environment name.  Required for deploy and verify stages.
    secrets:
        Secret reference names resolved right before the stage runs.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    kind: StageKind
    operation: str = ""
    environment: str | None = None
    secrets: tuple[str, ...] = ()
    timeout: float = Field(default=DEFAULT_STAGE_TIMEOUT_SECONDS, gt=0)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    failure_policy: FailurePolicy = FailurePolicy.FATAL
    expected_status: int = DEFAULT_EXPECTED_STATUS
    path: str = "/"

    @model_validator(mode="before")
    @classmethod
    def _default_retry(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("retry") is None:
            data = dict(data)
            if data.get("kind") == StageKind.VERIFY:
                data["retry"] = RetryPolicy.readiness()
            else:
                data["retry"] = RetryPolicy()
        return data

    @model_validator(mode="after")
    def _check_target(self) -> Stage:
        if self.kind in (StageKind.DEPLOY, StageKind.VERIFY) and not self.environment:
            raise ValueError(f"{self.kind.value} stage '{self.name}' needs an environment")
        if self.kind == StageKind.VALIDATE and not self.operation:
            raise ValueError(f"validate stage '{self.name}' needs an operation")
        return self

    @property
    def is_fatal(self) -> bool:
        return self.failure_policy == FailurePolicy.FATAL


class StageGroup(BaseModel):
    """Stages that may run concurrently; all finish before the next group."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    stages: tuple[Stage, ...] = Field(min_length=1)


class PipelineDefinition(BaseModel):
    """Ordered sequence of stage groups."""

    model_config = ConfigDict(frozen=True)

    name: str = "pipeline"
    groups: tuple[StageGroup, ...] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_stage_names(self) -> PipelineDefinition:
        seen: set[str] = set()
        for stage in self.iter_stages():
            if stage.name in seen:
                raise ValueError(f"Duplicate stage name: {stage.name}")
            seen.add(stage.name)
        return self

    def iter_stages(self) -> Iterator[Stage]:
        for group in self.groups:
            yield from group.stages

    def target_environments(self) -> set[str]:
        """Names of every environment some stage targets."""
        return {s.environment for s in self.iter_stages() if s.environment}

    def verified_environments(self) -> set[str]:
        """Environments that have at least one verify stage."""
        return {
            s.environment
            for s in self.iter_stages()
            if s.kind == StageKind.VERIFY and s.environment
        }

    def restricted_to(self, environments: set[str]) -> PipelineDefinition:
        """Return a copy without stages that target other environments.

        Groups left empty are dropped.  Stages with no target environment
        are always kept.
        """
        groups: list[StageGroup] = []
        for group in self.groups:
            kept = tuple(
                s for s in group.stages
                if s.environment is None or s.environment in environments
            )
            if kept:
                groups.append(StageGroup(name=group.name, stages=kept))
        if not groups:
            raise DefinitionError(
                f"Pipeline '{self.name}' has no stages for environments {sorted(environments)}"
            )
        return PipelineDefinition(name=self.name, groups=tuple(groups))
