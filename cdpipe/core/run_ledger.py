"""Append-only, hash-chained execution ledger backed by SQLite.

The ledger is the durable store for everything an execution needs to be
resumed: the event log (hash-chained per run), sealed artifact metadata
and deployed pipeline definitions.  Monitor views are projections of it.

Design:
- Append-only: no update, no delete.
- Hash-chained: each event includes SHA-256 of the previous event of its run.
- Artifact rows are write-once per ``(run_id, name)``.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from cdpipe.core.hasher import compute_entry_hash
from cdpipe.models.artifacts import ArtifactRef
from cdpipe.models.ledger import EventType, LedgerEntry


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS execution_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    run_id                TEXT NOT NULL,
    event_type            TEXT NOT NULL,
    stage_name            TEXT NOT NULL DEFAULT '',
    action_name           TEXT NOT NULL DEFAULT '',
    state_transition      TEXT NOT NULL DEFAULT '',
    timestamp_utc         TEXT NOT NULL,
    detail_json           TEXT NOT NULL DEFAULT '{}',
    artifact_refs_json    TEXT NOT NULL DEFAULT '[]',
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_run_id ON execution_ledger(run_id, id);
"""

_CREATE_ARTIFACTS = """
CREATE TABLE IF NOT EXISTS artifacts (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id        TEXT NOT NULL,
    name          TEXT NOT NULL,
    producer      TEXT NOT NULL,
    location      TEXT NOT NULL,
    payload_json  TEXT,
    created_at    TEXT NOT NULL,
    UNIQUE (run_id, name)
);
"""

_CREATE_DEFINITIONS = """
CREATE TABLE IF NOT EXISTS pipeline_definitions (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    pipeline_name    TEXT NOT NULL,
    definition_hash  TEXT NOT NULL,
    definition_json  TEXT NOT NULL,
    applied_by       TEXT NOT NULL DEFAULT '',
    applied_at       TEXT NOT NULL
);
"""


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class ExecutionLedger:
    """Append-only, hash-chained execution ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes chain-link computation with the insert that uses it.
        self._write_lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_ARTIFACTS)
            conn.execute(_CREATE_DEFINITIONS)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry to the ledger, computing hash chain links.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash`` set.
        """
        with self._write_lock:
            previous_hash = self._get_latest_hash(entry.run_id)

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""

            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": compute_entry_hash(entry_dict),
                }
            )
            self._insert(sealed)
        return sealed

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO execution_ledger
                    (entry_id, run_id, event_type, stage_name, action_name,
                     state_transition, timestamp_utc, detail_json,
                     artifact_refs_json, previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.event_type.value,
                    entry.stage_name,
                    entry.action_name,
                    entry.state_transition,
                    entry.timestamp_utc.isoformat(),
                    json.dumps(entry.model_dump(mode="json")["detail"]),
                    json.dumps(entry.artifact_references),
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, run_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM execution_ledger WHERE run_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for a run, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_ledger WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_all_run_ids(self) -> list[str]:
        """Return run_ids of executions, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id, MAX(id) AS last_id FROM execution_ledger "
                "WHERE event_type = ? GROUP BY run_id ORDER BY last_id DESC",
                (EventType.EXECUTION.value,),
            ).fetchall()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Artifacts (write-once)
    # ------------------------------------------------------------------

    def record_artifact(self, ref: ArtifactRef) -> None:
        """Persist sealed artifact metadata.  A second write for the same
        ``(run_id, name)`` raises ``sqlite3.IntegrityError``."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO artifacts
                    (run_id, name, producer, location, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    ref.run_id,
                    ref.name,
                    ref.producer,
                    ref.location,
                    json.dumps(ref.payload) if ref.payload is not None else None,
                    ref.created_at.isoformat(),
                ),
            )
            conn.commit()

    def get_artifacts(self, run_id: str) -> list[ArtifactRef]:
        """Return sealed artifacts of a run in production order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id, name, producer, location, payload_json, created_at "
                "FROM artifacts WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [
            ArtifactRef(
                run_id=r[0],
                name=r[1],
                producer=r[2],
                location=r[3],
                payload=json.loads(r[4]) if r[4] is not None else None,
                created_at=datetime.fromisoformat(r[5]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Pipeline definitions (append-only versions)
    # ------------------------------------------------------------------

    def record_definition(
        self,
        pipeline_name: str,
        definition_hash: str,
        definition_json: str,
        *,
        applied_by: str,
        applied_at: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO pipeline_definitions
                    (pipeline_name, definition_hash, definition_json, applied_by, applied_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    pipeline_name,
                    definition_hash,
                    definition_json,
                    applied_by,
                    applied_at.isoformat(),
                ),
            )
            conn.commit()

    def latest_definition(self, pipeline_name: str) -> tuple[str, str] | None:
        """Return ``(definition_hash, definition_json)`` of the latest version."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT definition_hash, definition_json FROM pipeline_definitions "
                "WHERE pipeline_name = ? ORDER BY id DESC LIMIT 1",
                (pipeline_name,),
            ).fetchone()
        return (row[0], row[1]) if row else None

    def definition_history(self, pipeline_name: str) -> list[str]:
        """Return definition hashes in application order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT definition_hash FROM pipeline_definitions "
                "WHERE pipeline_name = ? ORDER BY id ASC",
                (pipeline_name,),
            ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain integrity for a run.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )

            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )

            prev_hash = entry.entry_hash

        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            run_id,
            event_type,
            stage_name,
            action_name,
            state_transition,
            timestamp_utc,
            detail_json,
            artifact_refs_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            event_type=EventType(event_type),
            stage_name=stage_name,
            action_name=action_name,
            state_transition=state_transition,
            timestamp_utc=timestamp_utc,
            detail=json.loads(detail_json),
            artifact_references=json.loads(artifact_refs_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
