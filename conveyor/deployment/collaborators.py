"""External collaborators — artifact builder, scanner, deployer, operations.

The orchestrator only sees these narrow interfaces.  The shell-backed
implementations run a configured command with the stage context exported
as ``CONVEYOR_*`` environment variables and each resolved secret exported
under its upper-cased reference name.
"""

from __future__ import annotations

import abc
import logging
import os
import shlex
import subprocess
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, Union

from pydantic import BaseModel

from conveyor.config import DEFAULT_STAGE_TIMEOUT_SECONDS
from conveyor.deployment.context import StageContext
from conveyor.errors import TransientExecutionFailure
from conveyor.models.artifact import Artifact
from conveyor.models.environment import Environment
from conveyor.security.hasher import Hasher

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1
_KILL_GRACE_SECONDS = 5.0


class OperationResult(BaseModel):
    """Success flag plus diagnostic text from a collaborator call."""

    success: bool
    output: str = ""
    artifact: Artifact | None = None


Operation = Callable[[StageContext], Union[OperationResult, bool]]


def _timeout(context: StageContext) -> float:
    return context.stage.timeout if context.stage else DEFAULT_STAGE_TIMEOUT_SECONDS


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class ArtifactBuilder(abc.ABC):
    """Produces a tagged, versioned artifact from a commit."""

    @abc.abstractmethod
    def build(self, context: StageContext) -> OperationResult:
        """Build and push; a successful result carries the artifact."""


class Scanner(abc.ABC):
    """Vulnerability scanner."""

    @abc.abstractmethod
    def scan(self, artifact: Artifact | None, context: StageContext) -> OperationResult:
        """Scan *artifact*; success means no blocking findings."""


class Deployer(abc.ABC):
    """Rolls an artifact out to an environment."""

    @abc.abstractmethod
    def deploy(
        self,
        artifact: Artifact | None,
        environment: Environment,
        context: StageContext,
    ) -> OperationResult:
        """Deploy *artifact* to *environment*."""


# ---------------------------------------------------------------------------
# Shell-backed implementations
# ---------------------------------------------------------------------------

class CommandRunner:
    """Run one command without a shell, exporting the stage context.

    Parameters
    ----------
    cwd:
        Working directory for commands.
    base_env:
        Environment to start from.  Defaults to the process environment.
    """

    def __init__(
        self,
        cwd: str | Path | None = None,
        base_env: dict[str, str] | None = None,
    ) -> None:
        self.cwd = Path(cwd) if cwd else None
        self._base_env = base_env

    def run(self, command: str, context: StageContext, timeout: float) -> OperationResult:
        """Run *command*; a non-zero exit is a failed result.

        The process is terminated when the context's cancel event is set;
        that gives a failed result.

        Raises
        ------
        TransientExecutionFailure
            If the command exceeds *timeout*.
        """
        args = shlex.split(command)
        if not args:
            return OperationResult(success=False, output="empty command")

        env = dict(os.environ if self._base_env is None else self._base_env)
        env.update(context.env_vars())

        try:
            proc = subprocess.Popen(
                args,
                cwd=self.cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            return OperationResult(success=False, output=f"$ {command}\n{exc}")

        deadline = time.monotonic() + timeout
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if context.cancelled:
                    _stop(proc)
                    logger.info("Cancelled: %s", args[0])
                    return OperationResult(success=False, output=f"$ {command}\ncancelled")
                if time.monotonic() >= deadline:
                    _stop(proc)
                    raise TransientExecutionFailure(
                        f"command timed out after {timeout:g}s: {args[0]}"
                    ) from None

        output = f"$ {command}\nrc={proc.returncode}\nstdout:\n{stdout}\nstderr:\n{stderr}"
        return OperationResult(success=proc.returncode == 0, output=output)


def _stop(proc: subprocess.Popen) -> None:
    proc.terminate()
    try:
        proc.communicate(timeout=_KILL_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()


class ShellArtifactBuilder(ArtifactBuilder):
    """Build with a command; the artifact is ``<image>:<commit[:12]>``.

    When *output* names the file the command produces (relative paths are
    taken from the runner's working directory), the artifact carries its
    SHA-256 digest.
    """

    def __init__(
        self,
        command: str,
        image: str,
        runner: CommandRunner | None = None,
        output: str | Path | None = None,
    ) -> None:
        self.command = command
        self.image = image
        self.runner = runner or CommandRunner()
        self.output = Path(output) if output else None

    def build(self, context: StageContext) -> OperationResult:
        artifact = Artifact.from_commit(self.image, context.commit)
        # The command sees the identifier it is expected to produce
        scoped = replace(context, artifact=artifact)
        timeout = _timeout(context)
        result = self.runner.run(self.command, scoped, timeout)
        if result.success:
            result = result.model_copy(update={"artifact": self._digested(artifact)})
        return result

    def _digested(self, artifact: Artifact) -> Artifact:
        if self.output is None:
            return artifact
        path = self.output
        if not path.is_absolute() and self.runner.cwd is not None:
            path = self.runner.cwd / path
        if not path.is_file():
            logger.warning("Build output %s not found; %s has no digest", path, artifact.identifier)
            return artifact
        return artifact.model_copy(update={"digest": Hasher.hash_file(path)})


class ShellScanner(Scanner):
    def __init__(self, command: str, runner: CommandRunner | None = None) -> None:
        self.command = command
        self.runner = runner or CommandRunner()

    def scan(self, artifact: Artifact | None, context: StageContext) -> OperationResult:
        timeout = _timeout(context)
        return self.runner.run(self.command, context, timeout)


class ShellDeployer(Deployer):
    def __init__(self, command: str, runner: CommandRunner | None = None) -> None:
        self.command = command
        self.runner = runner or CommandRunner()

    def deploy(
        self,
        artifact: Artifact | None,
        environment: Environment,
        context: StageContext,
    ) -> OperationResult:
        timeout = _timeout(context)
        logger.info(
            "Deploying %s to %s (%s:%d)",
            artifact.identifier if artifact else "<none>",
            environment.name, environment.host, environment.port,
        )
        return self.runner.run(self.command, context, timeout)


# ---------------------------------------------------------------------------
# Named operations
# ---------------------------------------------------------------------------

class OperationRegistry:
    """Named in-process operations a stage can reference."""

    def __init__(self) -> None:
        self._operations: dict[str, Operation] = {}

    def register(self, name: str, fn: Operation) -> None:
        self._operations[name] = fn
        logger.debug("Registered operation: %s", name)

    def operation(self, name: str) -> Callable[[Operation], Operation]:
        """Decorator form of :meth:`register`."""

        def decorator(fn: Operation) -> Operation:
            self.register(name, fn)
            return fn

        return decorator

    def get(self, name: str) -> Operation | None:
        return self._operations.get(name)

    def names(self) -> list[str]:
        return sorted(self._operations)
