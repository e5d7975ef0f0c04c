"""DiagnosticsStore — redacted stage output kept out of Outcomes."""

from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Iterable

from conveyor.security.redaction import redact

logger = logging.getLogger(__name__)


def _safe(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", name) or "_"


class DiagnosticsStore:
    """Write stage output under ``<root>/<run_id>/<stage>.log``.

    Outcomes store only the returned reference.  Without a root directory
    the text is kept in memory.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self.root = Path(root) if root else None
        self._memory: dict[str, str] = {}
        self._lock = threading.Lock()

    def write(self, run_id: str, stage: str, text: str, secrets: Iterable[str] = ()) -> str:
        """Redact and store *text*; return its reference."""
        reference = f"{_safe(run_id)}/{_safe(stage)}.log"
        clean = redact(text, secrets)
        if self.root is None:
            with self._lock:
                self._memory[reference] = clean
            return reference

        path = self.root / reference
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(clean if clean.endswith("\n") else clean + "\n", encoding="utf-8")
        except OSError:
            logger.warning("Could not write diagnostics %s", path, exc_info=True)
            with self._lock:
                self._memory[reference] = clean
        return reference

    def read(self, reference: str) -> str:
        """Return stored text for *reference*, or an empty string."""
        with self._lock:
            if reference in self._memory:
                return self._memory[reference]
        if self.root is None:
            return ""
        path = self.root / reference
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            return ""
