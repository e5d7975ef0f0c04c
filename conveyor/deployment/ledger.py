"""DeploymentLedger — append-only, hash-chained deployment history in SQLite."""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from conveyor.models.artifact import Artifact, DeploymentRecord
from conveyor.security.hasher import Hasher

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS deployments (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    environment      TEXT    NOT NULL,
    artifact_id      TEXT    NOT NULL,
    version          TEXT    NOT NULL DEFAULT '',
    commit_ref       TEXT    NOT NULL DEFAULT '',
    digest           TEXT    NOT NULL DEFAULT '',
    run_id           TEXT    NOT NULL DEFAULT '',
    timestamp        TEXT    NOT NULL,
    previous_id      INTEGER,
    record_hash      TEXT    NOT NULL,
    prev_record_hash TEXT    NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_deployments_env ON deployments (environment, id);
"""

_COLUMNS = (
    "id, environment, artifact_id, version, commit_ref, digest, run_id, "
    "timestamp, previous_id, record_hash, prev_record_hash"
)


def _row_to_record(row: tuple) -> DeploymentRecord:
    return DeploymentRecord(
        id=row[0],
        environment=row[1],
        artifact_id=row[2],
        version=row[3],
        commit=row[4],
        digest=row[5],
        run_id=row[6],
        timestamp=row[7],
        previous_id=row[8],
        record_hash=row[9],
        prev_record_hash=row[10],
    )


def _hash_fields(environment: str, artifact: Artifact, run_id: str, ts: str, previous_id: int | None) -> dict:
    return {
        "environment": environment,
        "artifact_id": artifact.identifier,
        "version": artifact.version,
        "commit": artifact.commit,
        "digest": artifact.digest,
        "run_id": run_id,
        "timestamp": ts,
        "previous_id": previous_id,
    }


class DeploymentLedger:
    """Per-environment linked history of successful deployments.

    Each environment's chain is its own hash chain: ``prev_record_hash``
    is the hash of the record that was head when the row was appended.
    Rows are never updated or deleted.

    Parameters
    ----------
    db_path:
        Path to the SQLite file.  Defaults to ``':memory:'``.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn_lock = threading.Lock()
        with self._conn_lock:
            if self._db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def append(self, environment: str, artifact: Artifact, run_id: str = "") -> DeploymentRecord:
        """Append a record linked to the environment's current head."""
        ts = datetime.now(timezone.utc).isoformat()
        with self._conn_lock:
            head = self._head_row(environment)
            previous_id = head[0] if head else None
            prev_hash = head[9] if head else ""
            record_hash = Hasher.hash_fields(
                _hash_fields(environment, artifact, run_id, ts, previous_id), prev_hash,
            )
            cur = self._conn.execute(
                "INSERT INTO deployments "
                "(environment, artifact_id, version, commit_ref, digest, run_id, timestamp, "
                "previous_id, record_hash, prev_record_hash) VALUES (?,?,?,?,?,?,?,?,?,?)",
                (
                    environment, artifact.identifier, artifact.version, artifact.commit, artifact.digest,
                    run_id, ts, previous_id, record_hash, prev_hash,
                ),
            )
            self._conn.commit()
            record_id = cur.lastrowid or 0

        logger.info(
            "Recorded deployment #%d of %s to %s (previous #%s)",
            record_id, artifact.identifier, environment, previous_id,
        )
        return DeploymentRecord(
            id=record_id,
            environment=environment,
            artifact_id=artifact.identifier,
            version=artifact.version,
            commit=artifact.commit,
            digest=artifact.digest,
            run_id=run_id,
            timestamp=ts,
            previous_id=previous_id,
            record_hash=record_hash,
            prev_record_hash=prev_hash,
        )

    def head(self, environment: str) -> DeploymentRecord | None:
        """The most recent record for *environment*."""
        with self._conn_lock:
            row = self._head_row(environment)
        return _row_to_record(row) if row else None

    def get(self, record_id: int) -> DeploymentRecord | None:
        with self._conn_lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM deployments WHERE id = ?", (record_id,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def history(self, environment: str, limit: int | None = None) -> list[DeploymentRecord]:
        """Records for *environment*, newest first."""
        sql = f"SELECT {_COLUMNS} FROM deployments WHERE environment = ? ORDER BY id DESC"
        params: list = [environment]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._conn_lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_record(r) for r in rows]

    def environments(self) -> list[str]:
        with self._conn_lock:
            rows = self._conn.execute(
                "SELECT DISTINCT environment FROM deployments ORDER BY environment"
            ).fetchall()
        return [r[0] for r in rows]

    def verify_chain(self, environment: str) -> bool:
        """Validate one environment's links and hashes.  False if tampered."""
        with self._conn_lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM deployments WHERE environment = ? ORDER BY id",
                (environment,),
            ).fetchall()

        prev_id: int | None = None
        prev_hash = ""
        for row in rows:
            rec = _row_to_record(row)
            if rec.previous_id != prev_id or rec.prev_record_hash != prev_hash:
                return False
            expected = Hasher.hash_fields(
                _hash_fields(rec.environment, rec.artifact(), rec.run_id, rec.timestamp, rec.previous_id),
                prev_hash,
            )
            if expected != rec.record_hash:
                return False
            prev_id = rec.id
            prev_hash = rec.record_hash
        return True

    def close(self) -> None:
        with self._conn_lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _head_row(self, environment: str) -> tuple | None:
        return self._conn.execute(
            f"SELECT {_COLUMNS} FROM deployments WHERE environment = ? ORDER BY id DESC LIMIT 1",
            (environment,),
        ).fetchone()
