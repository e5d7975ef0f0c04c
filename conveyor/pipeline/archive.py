"""RunArchive — terminal run states stored as JSON files."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from conveyor.models.run import RunState

logger = logging.getLogger(__name__)


class RunArchive:
    """Persist finished runs under ``<root>/<run_id>.json``.

    Parameters
    ----------
    root:
        Archive directory; created on first write.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def save(self, state: RunState) -> Path:
        """Write *state* and return the file path."""
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"{state.id}.json"
        path.write_text(
            json.dumps(state.model_dump(mode="json"), indent=2), encoding="utf-8",
        )
        logger.info("Archived run %s (%s): %s", state.id, state.status.value, path)
        return path

    def load(self, run_id: str) -> RunState | None:
        path = self.root / f"{run_id}.json"
        if not path.is_file():
            return None
        try:
            return RunState.model_validate_json(path.read_text(encoding="utf-8"))
        except (ValueError, OSError):
            logger.debug("Unreadable run archive %s", path, exc_info=True)
            return None

    def list_runs(self) -> list[RunState]:
        """All archived runs sorted by creation time."""
        if not self.root.is_dir():
            return []
        runs: list[RunState] = []
        for path in sorted(self.root.glob("*.json")):
            state = self.load(path.stem)
            if state is not None:
                runs.append(state)
        return sorted(runs, key=lambda s: s.created_at)
