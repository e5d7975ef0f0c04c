"""DeploymentGate — branch-based promotion rules and the rollback chain.

The promotion mapping is an explicit function from branch name to the
highest promotion rank that branch may reach:

* trunk branches (``main`` / ``master`` by default) reach production;
* every other branch stops at the pre-production rank.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict

from pydantic import BaseModel, ConfigDict, Field

from conveyor.config import DEFAULT_PREPROD_RANK, DEFAULT_PROD_RANK, DEFAULT_TRUNK_BRANCHES
from conveyor.deployment.ledger import DeploymentLedger
from conveyor.environments.registry import EnvironmentRegistry
from conveyor.errors import AuthorizationDenied
from conveyor.models.artifact import Artifact, DeploymentRecord
from conveyor.models.environment import Environment

logger = logging.getLogger(__name__)

_REF_PREFIXES = ("refs/heads/", "origin/")


def normalize_branch(branch: str) -> str:
    """Strip ref prefixes so ``refs/heads/main`` and ``main`` are the same branch."""
    branch = branch.strip()
    for prefix in _REF_PREFIXES:
        if branch.startswith(prefix):
            return branch[len(prefix):]
    return branch


class PromotionPolicy(BaseModel):
    """Maps branches to the maximum promotion rank they may reach."""

    model_config = ConfigDict(frozen=True)

    trunk_branches: tuple[str, ...] = DEFAULT_TRUNK_BRANCHES
    preprod_rank: int = Field(default=DEFAULT_PREPROD_RANK, ge=0)
    prod_rank: int = Field(default=DEFAULT_PROD_RANK, ge=0)

    def is_trunk(self, branch: str) -> bool:
        return normalize_branch(branch) in self.trunk_branches

    def max_rank(self, branch: str) -> int:
        return self.prod_rank if self.is_trunk(branch) else self.preprod_rank


class DeploymentGate:
    """Decide which environments a branch may reach and keep deploy history.

    Parameters
    ----------
    registry:
        Environments known to this process.
    ledger:
        Record store.  Defaults to an in-memory ledger.
    policy:
        Promotion policy.  Defaults to trunk = main/master.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        ledger: DeploymentLedger | None = None,
        policy: PromotionPolicy | None = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger or DeploymentLedger()
        self.policy = policy or PromotionPolicy()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    # -- Authorization --------------------------------------------------------

    def authorize(self, branch: str, environment: str | Environment) -> bool:
        """Return True if *branch* may deploy to *environment*.

        Unknown environments are denied.  The answer depends only on the
        branch name and the environment's rank.
        """
        env = self._lookup(environment)
        if env is None:
            return False
        return env.rank <= self.policy.max_rank(branch)

    def require(self, branch: str, environment: str | Environment) -> Environment:
        """Like :meth:`authorize` but raises AuthorizationDenied."""
        name = environment.name if isinstance(environment, Environment) else environment
        env = self._lookup(environment)
        if env is None:
            raise AuthorizationDenied(branch, name, "unknown environment")
        limit = self.policy.max_rank(branch)
        if env.rank > limit:
            raise AuthorizationDenied(
                branch, name, f"rank {env.rank} exceeds the branch limit {limit}",
            )
        return env

    def reachable(self, branch: str) -> list[Environment]:
        """Registered environments *branch* may reach, lowest rank first."""
        limit = self.policy.max_rank(branch)
        return [e for e in self.registry.list_environments() if e.rank <= limit]

    # -- Record chain ---------------------------------------------------------

    def record(
        self,
        environment: str | Environment,
        artifact: Artifact,
        run_id: str = "",
        *,
        branch: str | None = None,
    ) -> DeploymentRecord:
        """Append a deployment record and advance the environment's head.

        When *branch* is given the promotion rule is re-checked first, so
        no record can exist for an environment the branch may not reach.
        Calls for the same environment are serialized.
        """
        name = environment.name if isinstance(environment, Environment) else environment
        if branch is not None:
            self.require(branch, name)
        with self._lock_for(name):
            return self.ledger.append(name, artifact, run_id)

    def head(self, environment: str) -> DeploymentRecord | None:
        return self.ledger.head(environment)

    def rollback_target(self, environment: str) -> DeploymentRecord | None:
        """The record immediately preceding the current head, if any."""
        head = self.ledger.head(environment)
        if head is None or head.previous_id is None:
            return None
        return self.ledger.get(head.previous_id)

    def history(self, environment: str) -> list[DeploymentRecord]:
        """The environment's record chain, newest first."""
        return self.ledger.history(environment)

    # -- Internals ------------------------------------------------------------

    def _lookup(self, environment: str | Environment) -> Environment | None:
        if isinstance(environment, Environment):
            return self.registry.get(environment.name) or environment
        return self.registry.get(environment)

    def _lock_for(self, environment: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[environment]
