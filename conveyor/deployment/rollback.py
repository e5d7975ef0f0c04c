"""RollbackManager — redeploy an environment's previous known-good artifact."""

from __future__ import annotations

import logging
import uuid

from pydantic import BaseModel

from conveyor.deployment.collaborators import Deployer
from conveyor.deployment.context import StageContext
from conveyor.deployment.gate import DeploymentGate
from conveyor.deployment.health import HealthChecker
from conveyor.errors import ConfigurationError, TransientExecutionFailure
from conveyor.models.artifact import DeploymentRecord
from conveyor.models.pipeline import RetryPolicy
from conveyor.security.redaction import redact

logger = logging.getLogger(__name__)


class RollbackResult(BaseModel):
    """What a rollback did."""

    environment: str
    success: bool = False
    target: DeploymentRecord | None = None
    record: DeploymentRecord | None = None
    message: str = ""


class RollbackManager:
    """Restore an environment to the record before its current head.

    The redeploy is appended to the environment's chain like any other
    deployment, so history stays append-only.

    Parameters
    ----------
    gate:
        Source of the rollback target and sink for the new record.
    deployer:
        Collaborator that performs the redeploy.
    health_checker:
        If given, the environment must pass verification before the
        rollback is recorded.
    """

    def __init__(
        self,
        gate: DeploymentGate,
        deployer: Deployer | None = None,
        health_checker: HealthChecker | None = None,
    ) -> None:
        self.gate = gate
        self.deployer = deployer
        self.health_checker = health_checker

    def rollback(
        self,
        environment: str,
        *,
        verify: bool = True,
        retry_budget: RetryPolicy | None = None,
        run_id: str | None = None,
    ) -> RollbackResult:
        """Redeploy the rollback target of *environment*.

        Returns a result with ``success=False`` when there is nothing to
        roll back to or the redeploy fails.

        Raises
        ------
        ConfigurationError
            If the environment is unknown or no deployer is configured.
        """
        env = self.gate.registry.require(environment)
        target = self.gate.rollback_target(environment)
        if target is None:
            logger.error("No earlier deployment of %s to roll back to", environment)
            return RollbackResult(environment=environment, message="no earlier deployment recorded")
        if self.deployer is None:
            raise ConfigurationError("No deployer configured for rollback")

        artifact = target.artifact()
        run_id = run_id or f"rollback-{uuid.uuid4().hex[:8]}"
        context = StageContext(
            run_id=run_id,
            branch="",
            commit=artifact.commit,
            environment=env,
            artifact=artifact,
        )
        logger.info("Rolling back %s to %s (record #%d)", environment, artifact.identifier, target.id)

        try:
            result = self.deployer.deploy(artifact, env, context)
        except TransientExecutionFailure as exc:
            return RollbackResult(environment=environment, target=target, message=str(exc))
        if not result.success:
            return RollbackResult(
                environment=environment, target=target, message=redact(result.output),
            )

        if verify and self.health_checker is not None:
            outcome = self.health_checker.verify(
                env, retry_budget=retry_budget, stage_name=f"rollback-verify-{environment}",
            )
            if not outcome.passed:
                return RollbackResult(environment=environment, target=target, message=outcome.error)

        record = self.gate.record(environment, artifact, run_id)
        logger.info("Rolled back %s to %s", environment, artifact.identifier)
        return RollbackResult(
            environment=environment,
            success=True,
            target=target,
            record=record,
            message=f"redeployed {artifact.identifier}",
        )
