"""Conveyor — deployment pipeline orchestrator.

Runs an ordered sequence of stage groups for a branch and commit, gates
promotion by branch, verifies deployments and keeps rollback history.
"""

__version__ = "1.0.0"

from conveyor.api.facade import Conveyor
from conveyor.deployment.collaborators import (
    ArtifactBuilder,
    Deployer,
    OperationRegistry,
    OperationResult,
    Scanner,
)
from conveyor.deployment.config_manager import ConfigManager
from conveyor.deployment.executor import StageExecutor
from conveyor.deployment.gate import DeploymentGate, PromotionPolicy
from conveyor.deployment.health import CheckResult, HealthChecker, HealthReport
from conveyor.deployment.ledger import DeploymentLedger
from conveyor.deployment.rollback import RollbackManager, RollbackResult
from conveyor.environments.registry import EnvironmentRegistry
from conveyor.errors import (
    AuthorizationDenied,
    ConfigurationError,
    ConveyorError,
    DefinitionError,
    HealthCheckTimeout,
    RunStateError,
    SecretAccessDenied,
    SecretError,
    SecretNotFound,
    TerminalStageFailure,
    TransientExecutionFailure,
)
from conveyor.models import (
    Artifact,
    DeploymentRecord,
    Environment,
    FailurePolicy,
    Outcome,
    OutcomeStatus,
    PipelineDefinition,
    RetryPolicy,
    RunState,
    RunStatus,
    Stage,
    StageGroup,
    StageKind,
)
from conveyor.notifications import ConsoleNotifier, NotificationDispatcher, NotificationSink, SlackNotifier
from conveyor.pipeline import PipelineRun, RunArchive
from conveyor.security import Hasher, SecretsProvider, redact

__all__ = [
    "__version__",
    # Facade
    "Conveyor",
    # Pipeline
    "PipelineDefinition",
    "PipelineRun",
    "RunArchive",
    "Stage",
    "StageGroup",
    "StageKind",
    "RetryPolicy",
    "FailurePolicy",
    "RunState",
    "RunStatus",
    "Outcome",
    "OutcomeStatus",
    # Deployment
    "Artifact",
    "ArtifactBuilder",
    "CheckResult",
    "ConfigManager",
    "Deployer",
    "DeploymentGate",
    "DeploymentLedger",
    "DeploymentRecord",
    "Environment",
    "EnvironmentRegistry",
    "HealthChecker",
    "HealthReport",
    "OperationRegistry",
    "OperationResult",
    "PromotionPolicy",
    "RollbackManager",
    "RollbackResult",
    "Scanner",
    "StageExecutor",
    # Notifications
    "ConsoleNotifier",
    "NotificationDispatcher",
    "NotificationSink",
    "SlackNotifier",
    # Security
    "Hasher",
    "SecretsProvider",
    "redact",
    # Errors
    "AuthorizationDenied",
    "ConfigurationError",
    "ConveyorError",
    "DefinitionError",
    "HealthCheckTimeout",
    "RunStateError",
    "SecretAccessDenied",
    "SecretError",
    "SecretNotFound",
    "TerminalStageFailure",
    "TransientExecutionFailure",
]
