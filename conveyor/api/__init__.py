"""Python API.

The :class:`Conveyor` facade wires configuration, environments, secrets,
the stage executor, the promotion gate and notifications together.
"""

from conveyor.api.facade import Conveyor

__all__ = ["Conveyor"]
