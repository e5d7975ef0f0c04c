"""Static environment definitions."""

from conveyor.environments.registry import EnvironmentRegistry

__all__ = ["EnvironmentRegistry"]
