"""Append-only, hash-chained rollout ledger backed by SQLite.

Every state transition of every rollout is one row. ``RolloutRecord``s
(target, artifact, timestamps, outcome) are projections of these rows, so
the audit trail and the rollback source are the same data.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained per rollout: each entry includes SHA-256 of the previous one.
- WAL journal mode for concurrent readers.
- entry_hash UNIQUE constraint for tamper detection.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from dockroll.core.hasher import compute_entry_hash
from dockroll.models.ledger import LedgerEntry
from dockroll.models.rollout import (
    FailureReason,
    RolloutRecord,
    RolloutState,
    RolloutStatus,
)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS rollout_ledger (
    id                    INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id              TEXT NOT NULL UNIQUE,
    rollout_id            TEXT NOT NULL,
    target_key            TEXT NOT NULL,
    artifact_ref          TEXT NOT NULL,
    state_transition      TEXT NOT NULL,
    timestamp_utc         TEXT NOT NULL,
    details_json          TEXT NOT NULL DEFAULT '{}',
    schema_version        TEXT NOT NULL,
    previous_entry_hash   TEXT NOT NULL DEFAULT '',
    entry_hash            TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_ROLLOUT = """
CREATE INDEX IF NOT EXISTS idx_rollout_id ON rollout_ledger(rollout_id, id);
"""

_CREATE_IDX_TARGET = """
CREATE INDEX IF NOT EXISTS idx_target_key ON rollout_ledger(target_key, id);
"""

_COLUMNS = (
    "id, entry_id, rollout_id, target_key, artifact_ref, state_transition, "
    "timestamp_utc, details_json, schema_version, previous_entry_hash, entry_hash"
)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class RolloutLedger:
    """Append-only, hash-chained rollout ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes read-latest-hash + insert within this process.
        self._write_lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_ROLLOUT)
            conn.execute(_CREATE_IDX_TARGET)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, computing its hash chain link.

        Returns the entry with ``previous_entry_hash`` and ``entry_hash``
        set. This is the ONLY write method.
        """
        with self._write_lock:
            previous_hash = self._get_latest_hash(entry.rollout_id)

            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            entry_hash = compute_entry_hash(entry_dict)

            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": entry_hash,
                }
            )
            self._insert(sealed)
        return sealed

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO rollout_ledger
                    (entry_id, rollout_id, target_key, artifact_ref,
                     state_transition, timestamp_utc, details_json,
                     schema_version, previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.rollout_id,
                    entry.target_key,
                    entry.artifact_ref,
                    entry.state_transition,
                    entry.timestamp_utc.isoformat(),
                    json.dumps(entry.details, sort_keys=True),
                    entry.schema_version,
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, rollout_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM rollout_ledger WHERE rollout_id = ? "
                "ORDER BY id DESC LIMIT 1",
                (rollout_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_rollout_entries(self, rollout_id: str) -> list[LedgerEntry]:
        """Return all entries for a rollout, ordered chronologically."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM rollout_ledger WHERE rollout_id = ? ORDER BY id ASC",
                (rollout_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_rollout_ids(
        self, target_key: str | None = None, *, limit: int = 50
    ) -> list[str]:
        """Return rollout ids, most recently started first."""
        query = "SELECT rollout_id, MIN(id) AS first_id FROM rollout_ledger"
        params: tuple = ()
        if target_key is not None:
            query += " WHERE target_key = ?"
            params = (target_key,)
        query += " GROUP BY rollout_id ORDER BY first_id DESC LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(query, (*params, limit)).fetchall()
        return [row[0] for row in rows]

    def get_record(self, rollout_id: str) -> RolloutRecord | None:
        """Project a rollout's entries into a ``RolloutRecord``."""
        entries = self.get_rollout_entries(rollout_id)
        return project_record(entries) if entries else None

    def get_records(
        self, target_key: str | None = None, *, limit: int = 50
    ) -> list[RolloutRecord]:
        """Records for recent rollouts, newest first."""
        records = []
        for rollout_id in self.get_rollout_ids(target_key, limit=limit):
            record = self.get_record(rollout_id)
            if record is not None:
                records.append(record)
        return records

    def last_successful(
        self, target_key: str, *, before: str | None = None
    ) -> RolloutRecord | None:
        """Most recent successful rollout on *target_key*.

        With *before*, skip rollouts up to and including that rollout id
        (so the caller can find "the one before the current one").
        """
        seen_before = before is None
        for record in self.get_records(target_key, limit=1000):
            if not seen_before:
                seen_before = record.rollout_id == before
                continue
            if record.status == RolloutStatus.SUCCESS:
                return record
        return None

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, rollout_id: str) -> bool:
        """Verify the hash chain for a rollout.

        Returns True if valid, raises ``LedgerIntegrityError`` otherwise.
        """
        prev_hash = ""
        for entry in self.get_rollout_entries(rollout_id):
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
            rollout_id,
            target_key,
            artifact_ref,
            state_transition,
            timestamp_utc,
            details_json,
            schema_version,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            rollout_id=rollout_id,
            target_key=target_key,
            artifact_ref=artifact_ref,
            state_transition=state_transition,
            timestamp_utc=datetime.fromisoformat(timestamp_utc),
            details=json.loads(details_json),
            schema_version=schema_version,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )


def project_record(entries: list[LedgerEntry]) -> RolloutRecord:
    """Fold a rollout's ledger entries into its ``RolloutRecord``."""
    first = entries[0]
    warnings: list[str] = []
    pulled_digest: str | None = None
    previous_image: str | None = None
    rolled_back = False
    service_down = False
    state = RolloutState.PENDING
    status: RolloutStatus | None = None
    reason: FailureReason | None = None
    finished_at: datetime | None = None

    for entry in entries:
        details = entry.details
        warnings.extend(details.get("warnings", []))
        pulled_digest = details.get("pulled_digest", pulled_digest)
        previous_image = details.get("previous_image", previous_image)
        rolled_back = rolled_back or bool(details.get("rolled_back"))
        service_down = service_down or bool(details.get("service_down"))
        try:
            state = RolloutState(entry.to_state)
        except ValueError:
            continue
        if state == RolloutState.RUNNING:
            status, finished_at = RolloutStatus.SUCCESS, entry.timestamp_utc
        elif state == RolloutState.FAILED:
            status, finished_at = RolloutStatus.FAILED, entry.timestamp_utc
            if details.get("reason"):
                reason = FailureReason(details["reason"])

    return RolloutRecord(
        rollout_id=first.rollout_id,
        target_key=first.target_key,
        artifact_ref=first.artifact_ref,
        started_at=first.timestamp_utc,
        finished_at=finished_at,
        state=state,
        status=status,
        reason=reason,
        warnings=warnings,
        pulled_digest=pulled_digest,
        previous_image=previous_image,
        rolled_back=rolled_back,
        service_down=service_down,
    )
