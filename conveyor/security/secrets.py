"""SecretsProvider — resolves secret references from an encrypted store.

The store is a JSON file mapping reference names to Fernet tokens plus the
environments allowed to read them::

    {
      "registry_password": {"value": "gAAAAA...", "environments": ["staging", "production"]},
      "lint_token": {"value": "gAAAAA..."}
    }

An entry without ``environments`` is readable from every scope.  Plaintext
is produced only by :meth:`SecretsProvider.resolve` and is never written
back to disk.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Iterable

from cryptography.fernet import Fernet, InvalidToken

from conveyor.errors import ConfigurationError, SecretAccessDenied, SecretNotFound

logger = logging.getLogger(__name__)


class SecretsProvider:
    """Resolve secret references scoped by environment.

    Parameters
    ----------
    key:
        Fernet key used to decrypt stored values.
    store_path:
        JSON store location.  If *None* the store lives only in memory,
        which is what tests use.
    """

    def __init__(self, key: bytes | str, store_path: str | Path | None = None) -> None:
        if isinstance(key, str):
            key = key.encode("ascii")
        try:
            self._fernet = Fernet(key)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid secrets key: {exc}") from exc
        self._store_path = Path(store_path) if store_path else None
        self._store: dict[str, dict[str, Any]] = self._load_store()

    # -- Key management -----------------------------------------------------

    @staticmethod
    def generate_key() -> bytes:
        """Generate a new store key."""
        return Fernet.generate_key()

    # -- Store maintenance --------------------------------------------------

    def put(self, reference: str, value: str, environments: Iterable[str] | None = None) -> None:
        """Encrypt *value* and store it under *reference*.

        Persists the store when it is file-backed.
        """
        entry: dict[str, Any] = {
            "value": self._fernet.encrypt(value.encode("utf-8")).decode("ascii"),
        }
        if environments is not None:
            entry["environments"] = sorted(environments)
        self._store[reference] = entry
        self._save_store()

    def references(self) -> list[str]:
        return sorted(self._store)

    def known_values(self) -> list[str]:
        """Every decryptable plaintext, for redacting output that was not scoped."""
        values = []
        for reference, entry in self._store.items():
            try:
                values.append(self._fernet.decrypt(entry["value"].encode("ascii")).decode("utf-8"))
            except (InvalidToken, KeyError, AttributeError):
                logger.debug("Skipping undecryptable secret %s", reference)
        return values

    # -- Resolution ---------------------------------------------------------

    def resolve(self, reference: str, scope: str | None = None) -> str:
        """Return the plaintext for *reference* as seen from *scope*.

        Raises
        ------
        SecretNotFound
            If the reference is unknown.
        SecretAccessDenied
            If the entry is restricted and *scope* is not allowed.
        """
        entry = self._store.get(reference)
        if entry is None:
            raise SecretNotFound(reference)

        allowed = entry.get("environments")
        if allowed is not None and scope not in allowed:
            logger.warning("Denied secret %s to scope %s", reference, scope)
            raise SecretAccessDenied(reference, scope)

        try:
            return self._fernet.decrypt(entry["value"].encode("ascii")).decode("utf-8")
        except (InvalidToken, KeyError, AttributeError) as exc:
            raise ConfigurationError(f"Secret '{reference}' cannot be decrypted") from exc

    def resolve_all(self, references: Iterable[str], scope: str | None = None) -> dict[str, str]:
        """Resolve several references into a fresh dict owned by the caller."""
        return {ref: self.resolve(ref, scope) for ref in references}

    # -- Internals ----------------------------------------------------------

    def _load_store(self) -> dict[str, dict[str, Any]]:
        if self._store_path is None or not self._store_path.is_file():
            return {}
        try:
            data = json.loads(self._store_path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            raise ConfigurationError(f"Cannot read secrets store {self._store_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Secrets store {self._store_path} must hold an object")
        return data

    def _save_store(self) -> None:
        if self._store_path is None:
            return
        self._store_path.parent.mkdir(parents=True, exist_ok=True)
        self._store_path.write_text(json.dumps(self._store, indent=2), encoding="utf-8")
