"""StageExecutor — runs one stage with timeout, retry, and failure policy.

Dispatch is driven by ``Stage.kind``:

* ``validate`` and any stage with an ``operation`` run that operation
  (``shell:<command>`` or a registered name);
* ``build`` / ``scan`` / ``deploy`` without an operation call the
  configured ArtifactBuilder / Scanner / Deployer;
* ``verify`` hands its retry budget to the HealthChecker as a readiness
  wait.

Transient failures are retried here and never escape the stage: the
caller always gets an Outcome.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import replace

from conveyor.deployment.collaborators import (
    ArtifactBuilder,
    CommandRunner,
    Deployer,
    OperationRegistry,
    OperationResult,
    Scanner,
)
from conveyor.deployment.context import StageContext, wait_for_cancel
from conveyor.deployment.diagnostics import DiagnosticsStore
from conveyor.deployment.health import HealthChecker, Wait
from conveyor.environments.registry import EnvironmentRegistry
from conveyor.errors import (
    ConfigurationError,
    ConveyorError,
    DefinitionError,
    SecretError,
    TerminalStageFailure,
    TransientExecutionFailure,
)
from conveyor.models.artifact import Artifact
from conveyor.models.pipeline import Stage, StageKind
from conveyor.models.run import Outcome, OutcomeStatus
from conveyor.security.redaction import redact
from conveyor.security.secrets import SecretsProvider

logger = logging.getLogger(__name__)

SHELL_PREFIX = "shell:"

# How often a running attempt checks for cancellation
CANCEL_POLL_SECONDS = 0.05


class StageExecutor:
    """Execute stages and turn every result into an Outcome.

    Parameters
    ----------
    secrets:
        Provider used to resolve ``Stage.secrets``.  Stages that name
        secrets fail when no provider is configured.
    registry:
        Environment facts for :meth:`build_context`.
    health_checker:
        Used by verify stages.
    builder, scanner, deployer:
        External collaborators for build, scan and deploy stages.
    operations:
        Named in-process operations.
    runner:
        Runs ``shell:`` operations.
    diagnostics:
        Where redacted stage output goes.
    wait:
        ``wait(cancel_event, seconds) -> cancelled`` used between retries.
    """

    def __init__(
        self,
        *,
        secrets: SecretsProvider | None = None,
        registry: EnvironmentRegistry | None = None,
        health_checker: HealthChecker | None = None,
        builder: ArtifactBuilder | None = None,
        scanner: Scanner | None = None,
        deployer: Deployer | None = None,
        operations: OperationRegistry | None = None,
        runner: CommandRunner | None = None,
        diagnostics: DiagnosticsStore | None = None,
        wait: Wait | None = None,
    ) -> None:
        self.secrets = secrets
        self.registry = registry
        self.health_checker = health_checker or HealthChecker(wait=wait)
        self.builder = builder
        self.scanner = scanner
        self.deployer = deployer
        self.operations = operations or OperationRegistry()
        self.runner = runner or CommandRunner()
        self.diagnostics = diagnostics or DiagnosticsStore()
        self._wait = wait or wait_for_cancel

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build_context(
        self,
        stage: Stage,
        *,
        run_id: str,
        branch: str,
        commit: str,
        pipeline: str = "",
        artifact: Artifact | None = None,
        cancel_event: threading.Event | None = None,
    ) -> StageContext:
        """Assemble the context for *stage*, looking up its environment.

        Secrets are not resolved here; :meth:`execute` resolves them for
        the lifetime of the invocation only.
        """
        environment = None
        if stage.environment:
            if self.registry is None:
                raise ConfigurationError("No environment registry configured")
            environment = self.registry.require(stage.environment)
        return StageContext(
            run_id=run_id,
            branch=branch,
            commit=commit,
            pipeline=pipeline,
            stage=stage,
            environment=environment,
            artifact=artifact,
            cancel_event=cancel_event or threading.Event(),
        )

    def execute(self, stage: Stage, context: StageContext) -> Outcome:
        """Run *stage* to a terminal Outcome."""
        started = time.monotonic()
        context = replace(context, stage=stage, secrets={})

        if context.cancelled:
            return self._outcome(stage, context, OutcomeStatus.SKIPPED, 0, started, [], "cancelled")

        if stage.kind in (StageKind.DEPLOY, StageKind.VERIFY) and context.environment is None:
            return self._outcome(
                stage, context, OutcomeStatus.FAILED, 0, started, [],
                f"No environment resolved for stage '{stage.name}'",
            )

        try:
            context.secrets.update(self._resolve_secrets(stage, context))
        except (SecretError, ConfigurationError) as exc:
            logger.warning("Stage %s cannot start: %s", stage.name, exc)
            return self._outcome(stage, context, OutcomeStatus.FAILED, 0, started, [], str(exc))

        try:
            if stage.kind == StageKind.VERIFY and not stage.operation:
                return self._verify(stage, context, started)
            return self._run_with_retry(stage, context, started)
        finally:
            context.secrets.clear()

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _run_with_retry(self, stage: Stage, context: StageContext, started: float) -> Outcome:
        policy = stage.retry
        log: list[str] = []
        error = ""
        attempts = 0

        for attempt in range(1, policy.attempts + 1):
            if context.cancelled:
                return self._outcome(stage, context, OutcomeStatus.SKIPPED, attempts, started, log, "cancelled")
            attempts = attempt

            try:
                result = self._attempt(stage, context)
            except TransientExecutionFailure as exc:
                error = str(exc)
                log.append(f"attempt {attempt}: {error}")
            except ConveyorError as exc:
                error = str(exc)
                log.append(f"attempt {attempt}: {error}")
                logger.warning("Stage %s failed terminally: %s", stage.name, redact(error, context.secrets.values()))
                break
            else:
                if result is None:
                    return self._outcome(
                        stage, context, OutcomeStatus.SKIPPED, attempt, started, log, "cancelled",
                    )
                if result.output:
                    log.append(f"attempt {attempt}:\n{result.output}")
                if result.success:
                    artifact = None
                    if stage.kind == StageKind.BUILD:
                        artifact = result.artifact or Artifact.from_commit(
                            context.pipeline or "artifact", context.commit,
                        )
                    return self._outcome(
                        stage, context, OutcomeStatus.PASSED, attempt, started, log, "", artifact,
                    )
                error = "operation reported failure"
                log.append(f"attempt {attempt}: {error}")

            if context.cancelled:
                return self._outcome(stage, context, OutcomeStatus.SKIPPED, attempts, started, log, "cancelled")

            if attempt < policy.attempts:
                delay = policy.delay_after(attempt)
                logger.info(
                    "Stage %s attempt %d/%d failed; retrying in %.1fs",
                    stage.name, attempt, policy.attempts, delay,
                )
                if self._wait(context.cancel_event, delay):
                    return self._outcome(stage, context, OutcomeStatus.SKIPPED, attempts, started, log, "cancelled")

        failure = TerminalStageFailure(stage.name, attempts, error)
        return self._outcome(stage, context, OutcomeStatus.FAILED, attempts, started, log, str(failure))

    def _attempt(self, stage: Stage, context: StageContext) -> OperationResult | None:
        """One attempt bounded by ``stage.timeout``.

        Returns None as soon as the context is cancelled.  The worker
        thread is abandoned on timeout or cancellation; shell operations
        watch the same timeout and cancel event and stop their process.
        """
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage.name}")
        future = pool.submit(self._dispatch, stage, context)
        deadline = time.monotonic() + stage.timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                try:
                    return future.result(timeout=max(0.0, min(CANCEL_POLL_SECONDS, remaining)))
                except FutureTimeout:
                    if future.done():
                        raise
                    if context.cancelled:
                        logger.info("Stage %s attempt cancelled", stage.name)
                        return None
                    if remaining <= CANCEL_POLL_SECONDS:
                        raise
        except FutureTimeout:
            raise TransientExecutionFailure(
                f"attempt exceeded timeout of {stage.timeout:g}s"
            ) from None
        except ConveyorError:
            raise
        except Exception as exc:
            # Collaborator internals are out of our hands: treat as recoverable
            raise TransientExecutionFailure(f"{type(exc).__name__}: {exc}") from exc
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, stage: Stage, context: StageContext) -> OperationResult:
        if stage.operation:
            return self._run_operation(stage.operation, context, stage.timeout)

        if stage.kind == StageKind.BUILD:
            if self.builder is None:
                raise ConfigurationError(f"No artifact builder configured for stage '{stage.name}'")
            return self.builder.build(context)

        if stage.kind == StageKind.SCAN:
            if self.scanner is None:
                raise ConfigurationError(f"No scanner configured for stage '{stage.name}'")
            return self.scanner.scan(context.artifact, context)

        if stage.kind == StageKind.DEPLOY:
            if self.deployer is None:
                raise ConfigurationError(f"No deployer configured for stage '{stage.name}'")
            return self.deployer.deploy(context.artifact, context.environment, context)

        raise DefinitionError(f"Stage '{stage.name}' has nothing to run")

    def _run_operation(self, reference: str, context: StageContext, timeout: float) -> OperationResult:
        if reference.startswith(SHELL_PREFIX):
            return self.runner.run(reference[len(SHELL_PREFIX):].strip(), context, timeout)

        fn = self.operations.get(reference)
        if fn is None:
            raise DefinitionError(f"Unknown operation: {reference}")
        result = fn(context)
        if isinstance(result, OperationResult):
            return result
        return OperationResult(success=bool(result))

    def _verify(self, stage: Stage, context: StageContext, started: float) -> Outcome:
        log: list[str] = []
        probed = self.health_checker.verify(
            context.environment,
            stage.expected_status,
            stage.retry,
            path=stage.path,
            stage_name=stage.name,
            cancel_event=context.cancel_event,
            timeout=stage.timeout,
            log=log,
        )
        return self._outcome(stage, context, probed.status, probed.attempts, started, log, probed.error)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_secrets(self, stage: Stage, context: StageContext) -> dict[str, str]:
        if not stage.secrets:
            return {}
        if self.secrets is None:
            raise ConfigurationError(f"Stage '{stage.name}' needs secrets but no provider is configured")
        scope = context.environment.name if context.environment else None
        return self.secrets.resolve_all(stage.secrets, scope)

    def _outcome(
        self,
        stage: Stage,
        context: StageContext,
        status: OutcomeStatus,
        attempts: int,
        started: float,
        log: list[str],
        error: str,
        artifact: Artifact | None = None,
    ) -> Outcome:
        secret_values = list(context.secrets.values())
        if self.secrets is not None:
            secret_values.extend(self.secrets.known_values())
        reference = None
        if log or error:
            text = "\n".join(log + ([f"error: {error}"] if error else []))
            reference = self.diagnostics.write(context.run_id, stage.name, text, secret_values)

        outcome = Outcome(
            stage=stage.name,
            kind=stage.kind.value,
            environment=stage.environment,
            attempts=attempts,
            duration=time.monotonic() - started,
            status=status,
            diagnostics=reference,
            error=redact(error, secret_values),
            artifact=artifact,
        )
        logger.info(
            "Stage %s %s after %d attempt(s) in %.2fs",
            stage.name, status.value, attempts, outcome.duration,
        )
        return outcome
