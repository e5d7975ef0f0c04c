"""Content hashing utilities using stdlib hashlib (SHA-256)."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any


class Hasher:
    """SHA-256 hashing for strings, files, and ledger rows."""

    @staticmethod
    def hash_string(text: str) -> str:
        """Return the SHA-256 hex digest of *text*."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    @staticmethod
    def hash_file(path: str | Path) -> str:
        """Return the SHA-256 hex digest of the file at *path*."""
        h = hashlib.sha256()
        with Path(path).open("rb") as f:
            while True:
                chunk = f.read(65536)
                if not chunk:
                    break
                h.update(chunk)
        return h.hexdigest()

    @staticmethod
    def hash_fields(fields: dict[str, Any], previous: str = "") -> str:
        """Chain hash over *fields* (canonical JSON) and the *previous* hash."""
        canonical = json.dumps(fields, sort_keys=True, separators=(",", ":"))
        return Hasher.hash_string(canonical + previous)
