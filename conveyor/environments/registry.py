"""EnvironmentRegistry — immutable snapshot of the deployment targets."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator

from pydantic import ValidationError

from conveyor.errors import ConfigurationError
from conveyor.models.environment import Environment

logger = logging.getLogger(__name__)


class EnvironmentRegistry:
    """Read-only lookup of environments by name.

    Loaded once per process; there is no reload or mutation API.  Runs
    receive Environment objects from here explicitly rather than looking
    them up globally.
    """

    def __init__(self, environments: Iterable[Environment] = ()) -> None:
        self._environments: dict[str, Environment] = {}
        for env in environments:
            if env.name in self._environments:
                raise ConfigurationError(f"Duplicate environment: {env.name}")
            self._environments[env.name] = env

    @classmethod
    def from_dicts(cls, entries: Iterable[dict[str, Any]]) -> EnvironmentRegistry:
        try:
            return cls(Environment.model_validate(e) for e in entries)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid environment configuration: {exc}") from exc

    @classmethod
    def from_file(cls, path: str | Path) -> EnvironmentRegistry:
        """Load environments from a JSON file.

        Accepts either a list of environment objects or a mapping of
        name -> attributes.
        """
        p = Path(path)
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise ConfigurationError(f"Cannot read environments file {p}: {exc}") from exc

        if isinstance(data, dict):
            entries = [{"name": name, **attrs} for name, attrs in data.items()]
        elif isinstance(data, list):
            entries = data
        else:
            raise ConfigurationError(f"Environments file {p} must hold a list or an object")

        registry = cls.from_dicts(entries)
        logger.info("Loaded %d environment(s) from %s", len(registry), p)
        return registry

    def get(self, name: str) -> Environment | None:
        return self._environments.get(name)

    def require(self, name: str) -> Environment:
        """Like :meth:`get` but raises ConfigurationError for unknown names."""
        env = self._environments.get(name)
        if env is None:
            raise ConfigurationError(f"Unknown environment: {name}")
        return env

    def list_environments(self) -> list[Environment]:
        """All environments, least production-like first."""
        return sorted(self._environments.values(), key=lambda e: (e.rank, e.name))

    def names(self) -> set[str]:
        return set(self._environments)

    def production(self) -> Environment | None:
        """The highest-ranked environment."""
        envs = self.list_environments()
        return envs[-1] if envs else None

    def __contains__(self, name: object) -> bool:
        return name in self._environments

    def __iter__(self) -> Iterator[Environment]:
        return iter(self.list_environments())

    def __len__(self) -> int:
        return len(self._environments)
