"""Append-only, hash-chained run ledger backed by SQLite.

The ledger is the durable record of every run: each run-state and
stage-status transition is one entry. Operator status queries and the
promotion gate read from it, so they work across processes.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained per run: each entry includes the SHA-256 of the previous one.
- Run transitions must start from the run's latest recorded state, checked
  inside the write transaction, so two processes cannot both advance a run.
- WAL journal mode for concurrent readers.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import closing
from datetime import datetime
from pathlib import Path

from shipline.core.hasher import compute_entry_hash
from shipline.models.artifacts import parse_ref
from shipline.models.ledger import RUN_SUBJECT, LedgerEntry
from shipline.models.stages import StageName, StageStatus

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS run_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    run_id                TEXT NOT NULL,
    subject               TEXT NOT NULL,
    transition            TEXT NOT NULL,
    timestamp_utc         TEXT NOT NULL,
    artifact_refs_json    TEXT NOT NULL DEFAULT '[]',
    detail_json           TEXT NOT NULL DEFAULT '{}',
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_run_id ON run_ledger(run_id, id);
"""

_CREATE_IDX_SUBJECT = """
CREATE INDEX IF NOT EXISTS idx_subject ON run_ledger(subject, transition);
"""


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class LedgerConflictError(RuntimeError):
    """Raised when a run transition does not start from the run's recorded state."""


class RunLedger:
    """Append-only, hash-chained run ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes read-hash-then-insert so concurrent runs in one process
        # never fork a chain.
        self._write_lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_RUN)
            conn.execute(_CREATE_IDX_SUBJECT)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, computing its hash chain link.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash`` set.
        Raises ``LedgerConflictError`` if *entry* is a run transition whose
        from-state is not the run's latest recorded state.
        """
        with self._write_lock, closing(self._connect()) as conn:
            # Takes the database write lock before reading, so the check and
            # the chain link see the same state in every process.
            conn.execute("BEGIN IMMEDIATE")
            try:
                if entry.subject == RUN_SUBJECT:
                    self._check_run_transition(conn, entry)
                previous_hash = self._get_latest_hash(conn, entry.run_id)

                entry_dict = entry.model_dump(mode="json")
                entry_dict["previous_entry_hash"] = previous_hash
                entry_dict["entry_hash"] = ""

                sealed = entry.model_copy(
                    update={
                        "previous_entry_hash": previous_hash,
                        "entry_hash": compute_entry_hash(entry_dict),
                    }
                )
                self._insert(conn, sealed)
            except Exception:
                conn.rollback()
                raise
            conn.commit()
        return sealed

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            """
            INSERT INTO run_ledger
                (entry_id, run_id, subject, transition, timestamp_utc,
                 artifact_refs_json, detail_json,
                 previous_entry_hash, entry_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.run_id,
                entry.subject,
                entry.transition,
                entry.timestamp_utc.isoformat()
                if isinstance(entry.timestamp_utc, datetime)
                else entry.timestamp_utc,
                json.dumps(entry.artifact_references),
                json.dumps(entry.detail, sort_keys=True),
                entry.previous_entry_hash,
                entry.entry_hash,
            ),
        )

    @staticmethod
    def _get_latest_hash(conn: sqlite3.Connection, run_id: str) -> str:
        row = conn.execute(
            "SELECT entry_hash FROM run_ledger WHERE run_id = ? ORDER BY id DESC LIMIT 1",
            (run_id,),
        ).fetchone()
        return row[0] if row else ""

    @staticmethod
    def _check_run_transition(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        row = conn.execute(
            "SELECT transition FROM run_ledger WHERE run_id = ? AND subject = ? "
            "ORDER BY id DESC LIMIT 1",
            (entry.run_id, RUN_SUBJECT),
        ).fetchone()
        recorded = row[0].split("->", 1)[-1] if row else ""
        from_state = entry.transition.split("->", 1)[0]
        if from_state != recorded:
            raise LedgerConflictError(
                f"Run {entry.run_id} is recorded as {recorded or 'unopened'}; "
                f"cannot record {entry.transition}"
            )

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_run_entries(self, run_id: str) -> list[LedgerEntry]:
        """Return all ledger entries for a run, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM run_ledger WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_all_run_ids(self) -> list[str]:
        """Return all distinct run ids, most recently started first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id FROM run_ledger GROUP BY run_id ORDER BY MIN(id) DESC"
            ).fetchall()
        return [row[0] for row in rows]

    def verified_artifacts(self) -> set[tuple[str, str]]:
        """Return every (service, version) that passed an acceptance stage."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT artifact_refs_json FROM run_ledger "
                "WHERE subject = ? AND transition = ?",
                (
                    StageName.ACCEPTANCE_TEST.value,
                    f"{StageStatus.RUNNING.value}->{StageStatus.SUCCEEDED.value}",
                ),
            ).fetchall()
        verified: set[tuple[str, str]] = set()
        for (refs_json,) in rows:
            for ref in json.loads(refs_json):
                verified.add(parse_ref(ref))
        return verified

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
            subject,
            transition,
            timestamp_utc,
            artifact_refs_json,
            detail_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            run_id=run_id,
            subject=subject,
            transition=transition,
            timestamp_utc=timestamp_utc,
            artifact_references=json.loads(artifact_refs_json),
            detail=json.loads(detail_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
