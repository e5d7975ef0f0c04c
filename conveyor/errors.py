"""Error taxonomy for pipeline runs."""

from __future__ import annotations


class ConveyorError(Exception):
    """Base class for every error raised by conveyor."""


class ConfigurationError(ConveyorError):
    """Raised when environment, secret, or project configuration is unusable."""


class DefinitionError(ConveyorError):
    """Raised for a malformed pipeline definition.

    A run started with an invalid definition is aborted before any stage
    executes.
    """


class RunStateError(ConveyorError):
    """Raised on an illegal pipeline-run state transition."""


class AuthorizationDenied(ConveyorError):
    """Raised when a branch may not reach an environment.

    This is a policy decision, never retried.
    """

    def __init__(self, branch: str, environment: str, reason: str = "") -> None:
        self.branch = branch
        self.environment = environment
        message = f"Branch '{branch}' is not authorized for environment '{environment}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class TransientExecutionFailure(ConveyorError):
    """A timeout or recoverable failure inside one stage attempt."""


class TerminalStageFailure(ConveyorError):
    """A stage exhausted its retry budget."""

    def __init__(self, stage: str, attempts: int, message: str = "") -> None:
        self.stage = stage
        self.attempts = attempts
        text = f"Stage '{stage}' failed after {attempts} attempt(s)"
        if message:
            text += f": {message}"
        super().__init__(text)


class HealthCheckTimeout(TerminalStageFailure):
    """The readiness budget of a verify stage was exhausted."""


class SecretError(ConveyorError):
    """Base class for secret resolution failures."""

    def __init__(self, reference: str, message: str) -> None:
        self.reference = reference
        super().__init__(message)


class SecretNotFound(SecretError):
    """The secret reference is unknown to the provider."""

    def __init__(self, reference: str) -> None:
        super().__init__(reference, f"Secret '{reference}' not found")


class SecretAccessDenied(SecretError):
    """The caller's scope does not permit access to the secret."""

    def __init__(self, reference: str, scope: str | None) -> None:
        self.scope = scope
        super().__init__(
            reference,
            f"Secret '{reference}' is not accessible from scope '{scope or '<none>'}'",
        )
