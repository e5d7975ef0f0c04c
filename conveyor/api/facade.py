"""Conveyor — the single entry point for triggering and inspecting pipelines.

Usage::

    from conveyor import Conveyor

    cv = Conveyor(project_root="/path/to/project")
    run = cv.trigger("pipeline.json", branch="feature/login", commit="3f2a...")
    run.status                    # RunStatus.SUCCEEDED
    cv.plan("pipeline.json", "feature/login")
    cv.history("staging")
    cv.rollback_target("production")
    cv.rollback("production")
    cv.health()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from conveyor.deployment.collaborators import (
    ArtifactBuilder,
    CommandRunner,
    Deployer,
    OperationRegistry,
    Scanner,
    ShellArtifactBuilder,
    ShellDeployer,
    ShellScanner,
)
from conveyor.deployment.config_manager import (
    ConfigManager,
    parallelism,
    promotion_policy,
    resolve_path,
)
from conveyor.deployment.diagnostics import DiagnosticsStore
from conveyor.deployment.executor import StageExecutor
from conveyor.deployment.gate import DeploymentGate
from conveyor.deployment.health import HealthChecker, HealthReport, Probe, Wait
from conveyor.deployment.ledger import DeploymentLedger
from conveyor.deployment.rollback import RollbackManager, RollbackResult
from conveyor.environments.registry import EnvironmentRegistry
from conveyor.models.artifact import DeploymentRecord
from conveyor.models.environment import Environment
from conveyor.models.pipeline import PipelineDefinition, Stage
from conveyor.models.run import RunState
from conveyor.notifications.dispatcher import NotificationDispatcher
from conveyor.notifications.providers import NotificationSink, SlackNotifier
from conveyor.pipeline.archive import RunArchive
from conveyor.pipeline.loader import load_definition, parse_definition, read_document
from conveyor.pipeline.run import PipelineRun
from conveyor.security.secrets import SecretsProvider

logger = logging.getLogger(__name__)

DefinitionSource = PipelineDefinition | dict[str, Any] | str | Path


class Conveyor:
    """The public interface for running deployment pipelines.

    Everything not passed in is built from the merged project
    configuration (see :class:`ConfigManager`).

    Parameters
    ----------
    project_root:
        Directory holding ``.conveyor/``, ``.env`` and relative config paths.
    config:
        Pre-merged configuration.  Loaded from *project_root* if omitted.
    registry:
        Environments.  Defaults to ``CONVEYOR_ENVIRONMENTS_FILE``.
    secrets:
        Secrets provider.  Defaults to the store named by
        ``CONVEYOR_SECRETS_FILE`` when ``CONVEYOR_SECRETS_KEY`` is set.
    builder, scanner, deployer:
        Collaborators.  Default to shell commands from the configuration.
    operations:
        Named in-process operations.
    probe, wait:
        Health-probe and delay hooks, mainly for tests.
    sinks:
        Extra notification sinks; console is always on.
    """

    def __init__(
        self,
        project_root: str | Path = ".",
        *,
        config: dict[str, str] | None = None,
        registry: EnvironmentRegistry | None = None,
        secrets: SecretsProvider | None = None,
        builder: ArtifactBuilder | None = None,
        scanner: Scanner | None = None,
        deployer: Deployer | None = None,
        operations: OperationRegistry | None = None,
        probe: Probe | None = None,
        wait: Wait | None = None,
        sinks: list[NotificationSink] | None = None,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self._config_manager = ConfigManager()
        self.config = config if config is not None else self._config_manager.load_config(self.project_root)

        self.registry = registry if registry is not None else self._load_registry()
        self.secrets = secrets if secrets is not None else self._load_secrets()

        ledger_path = resolve_path(self.project_root, self.config.get("CONVEYOR_LEDGER_DB", ""))
        self.ledger = DeploymentLedger(ledger_path or ":memory:")
        self.gate = DeploymentGate(self.registry, self.ledger, promotion_policy(self.config))
        self.parallelism = parallelism(self.config)

        runner = CommandRunner(cwd=self.project_root)
        self.health_checker = HealthChecker(probe=probe, wait=wait)
        self.diagnostics = DiagnosticsStore(
            resolve_path(self.project_root, self.config.get("CONVEYOR_DIAGNOSTICS_DIR", "")),
        )
        deployer = deployer or self._shell(ShellDeployer, "CONVEYOR_DEPLOY_COMMAND", runner)
        self.executor = StageExecutor(
            secrets=self.secrets,
            registry=self.registry,
            health_checker=self.health_checker,
            builder=builder or self._shell_builder(runner),
            scanner=scanner or self._shell(ShellScanner, "CONVEYOR_SCAN_COMMAND", runner),
            deployer=deployer,
            operations=operations,
            runner=runner,
            diagnostics=self.diagnostics,
            wait=wait,
        )

        self.notifications = NotificationDispatcher(sinks)
        webhook = self.config.get("SLACK_WEBHOOK", "")
        if webhook:
            self.notifications.add_sink(SlackNotifier(webhook))

        archive_dir = resolve_path(self.project_root, self.config.get("CONVEYOR_ARCHIVE_DIR", ""))
        self.archive = RunArchive(archive_dir) if archive_dir else None

        self._rollback_manager = RollbackManager(self.gate, deployer, self.health_checker)

    # -- Wiring ---------------------------------------------------------------

    def _load_registry(self) -> EnvironmentRegistry:
        path = resolve_path(self.project_root, self.config.get("CONVEYOR_ENVIRONMENTS_FILE", ""))
        if path is None or not path.is_file():
            logger.warning("No environment file found; registry is empty")
            return EnvironmentRegistry()
        return EnvironmentRegistry.from_file(path)

    def _load_secrets(self) -> SecretsProvider | None:
        key = self.config.get("CONVEYOR_SECRETS_KEY", "")
        if not key:
            return None
        path = resolve_path(self.project_root, self.config.get("CONVEYOR_SECRETS_FILE", ""))
        return SecretsProvider(key, path)

    def _shell(self, cls: type, key: str, runner: CommandRunner) -> Any:
        command = self.config.get(key, "")
        return cls(command, runner=runner) if command else None

    def _shell_builder(self, runner: CommandRunner) -> ShellArtifactBuilder | None:
        command = self.config.get("CONVEYOR_BUILD_COMMAND", "")
        if not command:
            return None
        return ShellArtifactBuilder(
            command,
            self.config.get("CONVEYOR_IMAGE", "app"),
            runner,
            output=resolve_path(self.project_root, self.config.get("CONVEYOR_BUILD_OUTPUT", "")),
        )

    def _definition(self, source: DefinitionSource) -> Any:
        if isinstance(source, (str, Path)):
            path = Path(source)
            return read_document(path if path.is_absolute() else self.project_root / path)
        return source

    # -- Pipelines ------------------------------------------------------------

    def load_definition(self, path: str | Path) -> PipelineDefinition:
        """Read and validate a definition file relative to the project."""
        p = Path(path)
        return load_definition(p if p.is_absolute() else self.project_root / p)

    def start(
        self,
        definition: DefinitionSource,
        branch: str,
        commit: str,
        *,
        prune_unreachable: bool = True,
        fail_fast: bool = False,
        run_id: str | None = None,
    ) -> PipelineRun:
        """Create and start a run without executing any group.

        A schema-invalid definition gives an ``aborted`` run; an
        unreadable file raises DefinitionError.
        """
        return PipelineRun.start(
            self._definition(definition),
            branch,
            commit,
            executor=self.executor,
            gate=self.gate,
            sink=self.notifications,
            archive=self.archive,
            parallelism=self.parallelism,
            run_id=run_id,
            prune_unreachable=prune_unreachable,
            fail_fast=fail_fast,
        )

    def trigger(
        self,
        definition: DefinitionSource,
        branch: str,
        commit: str,
        **kwargs: Any,
    ) -> PipelineRun:
        """Start a run and drive it to a terminal status."""
        run = self.start(definition, branch, commit, **kwargs)
        run.run_to_completion()
        return run

    def plan(self, definition: DefinitionSource, branch: str) -> list[Stage]:
        """Stages *branch* would not be allowed to run."""
        parsed = parse_definition(self._definition(definition))
        return [
            s for s in parsed.iter_stages()
            if s.environment and not self.gate.authorize(branch, s.environment)
        ]

    def reachable(self, branch: str) -> list[Environment]:
        return self.gate.reachable(branch)

    def runs(self) -> list[RunState]:
        """Archived runs, oldest first."""
        return self.archive.list_runs() if self.archive else []

    # -- Deployments ----------------------------------------------------------

    def history(self, environment: str) -> list[DeploymentRecord]:
        return self.gate.history(environment)

    def rollback_target(self, environment: str) -> DeploymentRecord | None:
        return self.gate.rollback_target(environment)

    def rollback(self, environment: str, *, verify: bool = True) -> RollbackResult:
        """Redeploy the previous known-good artifact of *environment*."""
        return self._rollback_manager.rollback(environment, verify=verify)

    def health(self, path: str = "/") -> HealthReport:
        """Probe every environment once; production outages are critical."""
        return self.health_checker.check_all(
            self.registry.list_environments(),
            critical_rank=self.gate.policy.prod_rank,
            path=path,
        )

    def generate_env_template(self) -> Path:
        """Write ``.env.example`` with every configuration key."""
        return self._config_manager.generate_env_template(self.project_root)

    def close(self) -> None:
        self.ledger.close()
