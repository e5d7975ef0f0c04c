"""Artifact and DeploymentRecord models."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class Artifact(BaseModel):
    """A tagged, versioned deployable unit produced by a build stage."""

    model_config = ConfigDict(frozen=True)

    identifier: str
    version: str = ""
    commit: str = ""
    digest: str = ""

    @classmethod
    def from_commit(cls, name: str, commit: str) -> Artifact:
        """Artifact implied by a commit when no build stage produced one."""
        short = commit[:12] if commit else "unversioned"
        return cls(identifier=f"{name}:{short}", version=short, commit=commit)


class DeploymentRecord(BaseModel):
    """One link in an environment's append-only deployment history.

    ``previous_id`` points at the record that was the head when this one
    was appended; ``None`` for the first deployment.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    environment: str
    artifact_id: str
    version: str = ""
    commit: str = ""
    run_id: str = ""
    timestamp: str = ""
    previous_id: int | None = None
    digest: str = ""
    record_hash: str = ""
    prev_record_hash: str = ""

    def artifact(self) -> Artifact:
        """The artifact this record deployed."""
        return Artifact(
            identifier=self.artifact_id, version=self.version, commit=self.commit, digest=self.digest,
        )
