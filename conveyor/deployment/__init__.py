"""Deployment execution — stage executor, health checks, promotion gate, rollback.

Runs individual stages against external collaborators, polls readiness,
decides which environments a branch may reach, and keeps the per-environment
deployment chain used for rollback.
"""

from conveyor.deployment.collaborators import (
    ArtifactBuilder,
    CommandRunner,
    Deployer,
    OperationRegistry,
    OperationResult,
    Scanner,
    ShellArtifactBuilder,
    ShellDeployer,
    ShellScanner,
)
from conveyor.deployment.config_manager import ConfigManager
from conveyor.deployment.context import StageContext
from conveyor.deployment.diagnostics import DiagnosticsStore
from conveyor.deployment.executor import StageExecutor
from conveyor.deployment.gate import DeploymentGate, PromotionPolicy
from conveyor.deployment.health import CheckResult, HealthChecker, HealthReport
from conveyor.deployment.ledger import DeploymentLedger
from conveyor.deployment.rollback import RollbackManager, RollbackResult

__all__ = [
    "ArtifactBuilder",
    "CheckResult",
    "CommandRunner",
    "ConfigManager",
    "Deployer",
    "DeploymentGate",
    "DeploymentLedger",
    "DiagnosticsStore",
    "HealthChecker",
    "HealthReport",
    "OperationRegistry",
    "OperationResult",
    "PromotionPolicy",
    "RollbackManager",
    "RollbackResult",
    "Scanner",
    "ShellArtifactBuilder",
    "ShellDeployer",
    "ShellScanner",
    "StageContext",
    "StageExecutor",
]
