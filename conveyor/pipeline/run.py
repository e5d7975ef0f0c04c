"""PipelineRun — the orchestrating state machine.

States::

    pending -> running -> succeeded
                       -> failed
                       -> aborted
    pending -> aborted            (invalid definition)

While ``running`` the run holds an index into the stage-group sequence.
Groups run strictly in order; the stages of one group run concurrently on
a bounded thread pool and every one of them reaches a terminal Outcome
before the next group starts.  State changes happen under the run lock.
:meth:`PipelineRun.abort` finishes an idle run at once; during a group it
sets the cancel event and the controlling thread concludes the run.  Sinks
are notified after the lock is released.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from conveyor.config import DEFAULT_PARALLELISM
from conveyor.deployment.executor import StageExecutor
from conveyor.deployment.gate import DeploymentGate
from conveyor.errors import AuthorizationDenied, ConveyorError, DefinitionError, RunStateError
from conveyor.models.artifact import Artifact
from conveyor.models.environment import Environment
from conveyor.models.pipeline import PipelineDefinition, Stage, StageGroup, StageKind
from conveyor.models.run import Outcome, OutcomeStatus, RunState, RunStatus
from conveyor.notifications.dispatcher import make_event
from conveyor.notifications.providers import NotificationSink
from conveyor.pipeline.archive import RunArchive
from conveyor.pipeline.loader import check_environments, parse_definition
from conveyor.security.redaction import redact

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


class PipelineRun:
    """One execution of a PipelineDefinition for a branch and commit.

    Parameters
    ----------
    definition:
        A PipelineDefinition or the decoded JSON document.  Schema errors
        abort the run at :meth:`start` with no stage executed.
    executor:
        Runs individual stages.
    gate:
        Promotion rules and deployment records.
    sink:
        Receives a run-state-changed event on every transition.
    archive:
        Stores the final state on reaching a terminal status.
    parallelism:
        Maximum stages running at once inside a group.
    prune_unreachable:
        Drop stages targeting environments the branch may not reach
        instead of failing them with AuthorizationDenied.
    fail_fast:
        Cancel the rest of a group as soon as a fatal stage fails.
    """

    def __init__(
        self,
        definition: PipelineDefinition | dict[str, Any] | None,
        branch: str,
        commit: str,
        *,
        executor: StageExecutor,
        gate: DeploymentGate,
        sink: NotificationSink | None = None,
        archive: RunArchive | None = None,
        parallelism: int = DEFAULT_PARALLELISM,
        run_id: str | None = None,
        prune_unreachable: bool = False,
        fail_fast: bool = False,
    ) -> None:
        self._source = definition
        self.definition: PipelineDefinition | None = None
        self.executor = executor
        self.gate = gate
        self.sink = sink
        self.archive = archive
        self.archive_path: Path | None = None
        self.parallelism = max(1, parallelism)
        self.prune_unreachable = prune_unreachable
        self.fail_fast = fail_fast

        name = definition.name if isinstance(definition, PipelineDefinition) else ""
        self.state = RunState(id=run_id or new_run_id(), pipeline=name, branch=branch, commit=commit)

        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._abort_reason: str | None = None
        self._in_flight = False
        self._deployed: set[str] = set()
        self._verified: set[str] = set()
        self._broken: set[str] = set()
        self._recorded: set[str] = set()
        self._denied: set[str] = set()
        self._terminal_notified = False

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def start(
        cls,
        definition: PipelineDefinition | dict[str, Any] | None,
        branch: str,
        commit: str,
        **kwargs: Any,
    ) -> PipelineRun:
        """Create a run and move it to ``running``.

        An invalid definition leaves the run ``aborted`` instead.
        """
        run = cls(definition, branch, commit, **kwargs)
        run._begin()
        return run

    def _begin(self) -> None:
        with self._lock:
            if self.state.status != RunStatus.PENDING:
                raise RunStateError(f"Run {self.id} already started")
            try:
                definition = parse_definition(self._source)
                check_environments(definition, self.gate.registry)
                if self.prune_unreachable:
                    definition = definition.restricted_to(
                        {e.name for e in self.reachable_environments()}
                    )
            except DefinitionError as exc:
                logger.error("Run %s rejected: %s", self.id, exc)
                self.state.reason = f"DefinitionError: {exc}"
                event = self._finish(RunStatus.ABORTED)
            else:
                self.definition = definition
                self.state.pipeline = definition.name
                logger.info(
                    "Run %s started: %s on %s@%s (%d group(s))",
                    self.id, definition.name, self.state.branch, self.state.commit[:12],
                    len(definition.groups),
                )
                event = self._transition(RunStatus.RUNNING)
        self._emit(event)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def id(self) -> str:
        return self.state.id

    @property
    def status(self) -> RunStatus:
        return self.state.status

    @property
    def outcomes(self) -> list[Outcome]:
        return list(self.state.outcomes)

    @property
    def group_index(self) -> int:
        return self.state.group_index

    def reachable_environments(self) -> list[Environment]:
        """Environments this run's branch may deploy to."""
        return self.gate.reachable(self.state.branch)

    def plan(self) -> list[Stage]:
        """Stages that target environments the branch may not reach."""
        if self.definition is None:
            return []
        return [
            s for s in self.definition.iter_stages()
            if s.environment and not self.gate.authorize(self.state.branch, s.environment)
        ]

    def advance(self) -> bool:
        """Execute the next stage group.

        Returns True while more groups remain.

        Raises
        ------
        RunStateError
            If the run is not ``running``.
        """
        more = self._step()
        if more is None:
            raise RunStateError(f"Cannot advance run {self.id} in state {self.status.value}")
        return more

    def run_to_completion(self) -> RunStatus:
        """Advance until a terminal status and return it."""
        while self._step():
            pass
        return self.status

    def abort(self, reason: str = "aborted by operator") -> None:
        """Cancel the run.

        In-flight stages observe the cancellation and report ``skipped``.
        Deployment records from completed groups are kept.

        Raises
        ------
        RunStateError
            If the run already reached a terminal status.
        """
        with self._lock:
            if self.status.is_terminal:
                raise RunStateError(f"Run {self.id} already {self.status.value}")
            self._cancel.set()
            if self._in_flight:
                # The controller finishes the group and transitions
                self._abort_reason = reason
                logger.info("Abort requested for run %s: %s", self.id, reason)
                return
            self.state.reason = reason
            event = self._finish(RunStatus.ABORTED)
        self._emit(event)

    # ------------------------------------------------------------------
    # Group execution
    # ------------------------------------------------------------------

    def _step(self) -> bool | None:
        with self._lock:
            if self.status != RunStatus.RUNNING or self.definition is None:
                return None
            self._in_flight = True
            group = self.definition.groups[self.state.group_index]

        logger.info(
            "Run %s group %d/%d (%s): %s",
            self.id, self.state.group_index + 1, len(self.definition.groups),
            group.name or "-", ", ".join(s.name for s in group.stages),
        )
        try:
            outcomes = self._run_group(group)
        except BaseException:
            with self._lock:
                self._in_flight = False
            raise

        # _in_flight clears in the same critical section that concludes the group
        with self._lock:
            self._in_flight = False
            more, event = self._conclude(group, outcomes)
        self._emit(event)
        return more

    def _conclude(self, group: StageGroup, outcomes: list[Outcome]) -> tuple[bool, dict[str, Any] | None]:
        if self.status.is_terminal:
            return False, None

        if self._abort_reason is not None:
            self.state.reason = self._abort_reason
            return False, self._finish(RunStatus.ABORTED)

        stages = {s.name: s for s in group.stages}
        fatal = next((o for o in outcomes if self._halts(stages[o.stage], o)), None)
        if fatal is not None:
            self.state.failed_stage = fatal.stage
            self.state.reason = fatal.error
            logger.error("Run %s failed at stage %s: %s", self.id, fatal.stage, fatal.error)
            return False, self._finish(RunStatus.FAILED)

        for o in outcomes:
            if o.failed:
                logger.warning("Stage %s failed but does not halt the run", o.stage)

        self._record_deployments()
        self.state.group_index += 1
        if self.state.group_index >= len(self.definition.groups):
            return False, self._finish(RunStatus.SUCCEEDED)
        return True, None

    def _run_group(self, group: StageGroup) -> list[Outcome]:
        stages = {s.name: s for s in group.stages}
        completed: list[Outcome] = []
        workers = min(self.parallelism, len(group.stages))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"run-{self.id}") as pool:
            futures = [pool.submit(self._run_stage, stage) for stage in group.stages]
            for future in as_completed(futures):
                outcome = future.result()
                self.state.outcomes.append(outcome)
                completed.append(outcome)
                self._track(stages[outcome.stage], outcome)
                if self.fail_fast and self._halts(stages[outcome.stage], outcome):
                    self._cancel.set()
        return completed

    def _run_stage(self, stage: Stage) -> Outcome:
        if stage.environment:
            try:
                self.gate.require(self.state.branch, stage.environment)
            except AuthorizationDenied as exc:
                logger.warning("Stage %s not executed: %s", stage.name, exc)
                self._denied.add(stage.name)
                return self._failed_outcome(stage, f"AuthorizationDenied: {exc}")

        try:
            context = self.executor.build_context(
                stage,
                run_id=self.id,
                branch=self.state.branch,
                commit=self.state.commit,
                pipeline=self.state.pipeline,
                artifact=self._current_artifact(),
                cancel_event=self._cancel,
            )
            return self.executor.execute(stage, context)
        except ConveyorError as exc:
            logger.error("Stage %s could not run: %s", stage.name, exc)
            return self._failed_outcome(stage, f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception("Stage %s raised unexpectedly", stage.name)
            return self._failed_outcome(stage, f"{type(exc).__name__}: {exc}")

    def _failed_outcome(self, stage: Stage, error: str) -> Outcome:
        return Outcome(
            stage=stage.name,
            kind=stage.kind.value,
            environment=stage.environment,
            attempts=0,
            status=OutcomeStatus.FAILED,
            error=redact(error),
        )

    def _halts(self, stage: Stage, outcome: Outcome) -> bool:
        # denied stages halt whatever their failure policy
        return outcome.failed and (stage.is_fatal or stage.name in self._denied)

    def _current_artifact(self) -> Artifact:
        return self.state.artifact or Artifact.from_commit(self.state.pipeline, self.state.commit)

    def _track(self, stage: Stage, outcome: Outcome) -> None:
        if stage.kind == StageKind.BUILD and outcome.passed and outcome.artifact is not None:
            self.state.artifact = outcome.artifact
        if not stage.environment:
            return
        if stage.kind == StageKind.DEPLOY:
            (self._deployed if outcome.passed else self._broken).add(stage.environment)
        elif stage.kind == StageKind.VERIFY:
            (self._verified if outcome.passed else self._broken).add(stage.environment)

    def _record_deployments(self) -> None:
        """Record every environment deployed and verified so far.

        Environments with a verify stage wait for it; a failed deploy or
        verify for an environment means it is never recorded by this run.
        """
        needs_verify = self.definition.verified_environments() if self.definition else set()
        ready = self._deployed - self._recorded - self._broken
        for env in sorted(ready):
            if env in needs_verify and env not in self._verified:
                continue
            record = self.gate.record(
                env, self._current_artifact(), self.id, branch=self.state.branch,
            )
            self._recorded.add(env)
            self.state.environments_reached.append(env)
            logger.info("Run %s reached %s (record #%d)", self.id, env, record.id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    # Callers hold the lock, change state, then deliver the returned event
    # through _emit() after releasing it.

    def _transition(self, status: RunStatus) -> dict[str, Any]:
        self.state.status = status
        return self._event()

    def _finish(self, status: RunStatus) -> dict[str, Any] | None:
        if self.status.is_terminal:
            return None
        self.state.status = status
        self.state.finished_at = datetime.now(timezone.utc).isoformat()
        logger.info("Run %s %s: %s", self.id, status.value, self.state.summary())
        if self.archive is not None:
            try:
                self.archive_path = self.archive.save(self.state)
            except OSError:
                logger.warning("Could not archive run %s", self.id, exc_info=True)
        if self._terminal_notified:
            return None
        self._terminal_notified = True
        return self._event()

    def _event(self) -> dict[str, Any]:
        event = make_event(self.state)
        if self.archive_path is not None:
            event["archive"] = str(self.archive_path)
        return event

    def _emit(self, event: dict[str, Any] | None) -> None:
        if self.sink is None or event is None:
            return
        try:
            self.sink.notify(event)
        except Exception:
            logger.warning("Notification for run %s failed", self.id, exc_info=True)
