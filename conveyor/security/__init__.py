"""Secrets resolution, redaction, and content hashing."""

from conveyor.security.hasher import Hasher
from conveyor.security.redaction import redact
from conveyor.security.secrets import SecretsProvider

__all__ = [
    "Hasher",
    "SecretsProvider",
    "redact",
]
