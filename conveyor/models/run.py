"""Run state models — RunStatus, Outcome, RunState."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from conveyor.models.artifact import Artifact


class RunStatus(str, Enum):
    """Lifecycle of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.ABORTED)

    @property
    def exit_code(self) -> int:
        """Process exit status for calling automation."""
        return _EXIT_CODES.get(self, 3)


_EXIT_CODES = {
    RunStatus.SUCCEEDED: 0,
    RunStatus.FAILED: 1,
    RunStatus.ABORTED: 2,
}


class OutcomeStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class Outcome(BaseModel):
    """Result of one attempted stage.

    ``diagnostics`` is a reference into the diagnostics store, never the
    raw output.  ``error`` is redacted before it is stored.
    """

    stage: str
    kind: str = ""
    environment: str | None = None
    attempts: int = 0
    duration: float = 0.0
    status: OutcomeStatus = OutcomeStatus.PASSED
    diagnostics: str | None = None
    error: str = ""
    artifact: Artifact | None = None

    @property
    def passed(self) -> bool:
        return self.status == OutcomeStatus.PASSED

    @property
    def failed(self) -> bool:
        return self.status == OutcomeStatus.FAILED


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class RunState(BaseModel):
    """Everything recorded about a pipeline run."""

    id: str
    pipeline: str = ""
    branch: str
    commit: str
    status: RunStatus = RunStatus.PENDING
    group_index: int = 0
    outcomes: list[Outcome] = Field(default_factory=list)
    reason: str = ""
    failed_stage: str | None = None
    environments_reached: list[str] = Field(default_factory=list)
    artifact: Artifact | None = None
    created_at: str = Field(default_factory=_now)
    finished_at: str | None = None

    def outcome(self, stage: str) -> Outcome | None:
        """The outcome recorded for *stage*, if it was attempted."""
        for o in self.outcomes:
            if o.stage == stage:
                return o
        return None

    def summary(self) -> str:
        """One-line digest: ``stage=status(attempts)`` in execution order."""
        parts = [f"{o.stage}={o.status.value}({o.attempts})" for o in self.outcomes]
        text = f"{self.status.value}: " + (" ".join(parts) if parts else "no stages run")
        if self.failed_stage:
            text += f"; first fatal failure: {self.failed_stage}"
        if self.reason:
            text += f"; reason: {self.reason}"
        return text
