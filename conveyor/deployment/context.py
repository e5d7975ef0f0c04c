"""StageContext — what one stage invocation is allowed to see."""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field

from conveyor.models.artifact import Artifact
from conveyor.models.environment import Environment
from conveyor.models.pipeline import Stage


def secret_env_name(reference: str) -> str:
    """Environment-variable name a secret is exposed under (``db-pass`` -> ``DB_PASS``)."""
    return re.sub(r"[^A-Za-z0-9]", "_", reference).upper()


def wait_for_cancel(event: threading.Event | None, seconds: float) -> bool:
    """Sleep up to *seconds*; return True as soon as *event* is set."""
    if seconds <= 0:
        return bool(event is not None and event.is_set())
    if event is None:
        time.sleep(seconds)
        return False
    return event.wait(seconds)


@dataclass
class StageContext:
    """Per-invocation inputs for a stage.

    ``secrets`` holds plaintext only for the duration of one
    :meth:`StageExecutor.execute` call and is excluded from ``repr`` so it
    cannot leak into log lines.
    """

    run_id: str
    branch: str
    commit: str
    pipeline: str = ""
    stage: Stage | None = None
    environment: Environment | None = None
    artifact: Artifact | None = None
    secrets: dict[str, str] = field(default_factory=dict, repr=False)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def env_vars(self) -> dict[str, str]:
        """Variables exported to shell operations."""
        env = {
            "CONVEYOR_RUN_ID": self.run_id,
            "CONVEYOR_BRANCH": self.branch,
            "CONVEYOR_COMMIT": self.commit,
            "CONVEYOR_PIPELINE": self.pipeline,
        }
        if self.stage is not None:
            env["CONVEYOR_STAGE"] = self.stage.name
        if self.environment is not None:
            env["CONVEYOR_ENVIRONMENT"] = self.environment.name
            env["CONVEYOR_HOST"] = self.environment.host
            env["CONVEYOR_PORT"] = str(self.environment.port)
        if self.artifact is not None:
            env["CONVEYOR_ARTIFACT"] = self.artifact.identifier
            env["CONVEYOR_VERSION"] = self.artifact.version
            if self.artifact.digest:
                env["CONVEYOR_ARTIFACT_DIGEST"] = self.artifact.digest
        for ref, value in self.secrets.items():
            env[secret_env_name(ref)] = value
        return env
