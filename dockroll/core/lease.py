"""Exclusive leases on a deployment slot (host + container name).

Two rollouts sharing a container name would race on stop/remove/start, so
the orchestrator holds a lease on ``DeploymentTarget.lease_key`` for the
whole attempt. Backends:

- ``InProcessLeaseManager``: threading primitives; exclusive within one
  process (one pipeline runner serving many triggers).
- ``SqliteLeaseManager``: a lease table in a shared SQLite file; exclusive
  across processes on the same machine / shared volume. Rows carry an
  expiry so a crashed holder cannot wedge a target forever.

A lease also carries its holder's cancellation handshake, so a superseding
rollout in another process can stop one that is still pulling.
``request_cancel`` only succeeds while the holder has not called
``commit``, and ``commit`` fails once a cancel was requested.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class LeaseUnavailable(RuntimeError):
    """Raised when a lease could not be acquired within the timeout."""


@runtime_checkable
class LeaseManager(Protocol):
    """Grants exclusive, scoped leases keyed by string."""

    def lease(
        self, key: str, holder: str, *, timeout: float
    ) -> AbstractContextManager[None]:
        """Block until *key* is free (or *timeout* elapses), then hold it."""
        ...

    def request_cancel(self, key: str) -> str | None:
        """Ask the current holder of *key* to abandon its rollout.

        Returns the holder when the request was recorded, ``None`` when the
        key is free or its holder has already committed.
        """
        ...

    def cancel_requested(self, key: str, holder: str) -> bool:
        """True once a cancel was requested for *holder*'s lease on *key*."""
        ...

    def commit(self, key: str, holder: str) -> bool:
        """Pass the point of no return. False if a cancel was requested."""
        ...


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class InProcessLeaseManager:
    """Leases that are exclusive among threads of this process."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._holders: dict[str, str] = {}
        # key -> "committed" | "cancel_requested" for the current holder
        self._marks: dict[str, str] = {}

    @contextmanager
    def lease(self, key: str, holder: str, *, timeout: float) -> Iterator[None]:
        deadline = time.monotonic() + timeout
        with self._cond:
            while key in self._holders:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LeaseUnavailable(
                        f"Lease {key} held by {self._holders[key]}; "
                        f"gave up after {timeout:.1f}s"
                    )
                self._cond.wait(remaining)
            self._holders[key] = holder
            self._marks.pop(key, None)
        logger.debug("Lease %s acquired by %s.", key, holder)
        try:
            yield
        finally:
            with self._cond:
                if self._holders.get(key) == holder:
                    del self._holders[key]
                    self._marks.pop(key, None)
                self._cond.notify_all()
            logger.debug("Lease %s released by %s.", key, holder)

    def holder(self, key: str) -> str | None:
        with self._cond:
            return self._holders.get(key)

    def request_cancel(self, key: str) -> str | None:
        with self._cond:
            holder = self._holders.get(key)
            if holder is None or self._marks.get(key) == "committed":
                return None
            self._marks[key] = "cancel_requested"
            return holder

    def cancel_requested(self, key: str, holder: str) -> bool:
        with self._cond:
            return (
                self._holders.get(key) == holder
                and self._marks.get(key) == "cancel_requested"
            )

    def commit(self, key: str, holder: str) -> bool:
        with self._cond:
            if self._holders.get(key) != holder:
                return False
            if self._marks.get(key) == "cancel_requested":
                return False
            self._marks[key] = "committed"
            return True


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_CREATE_LEASES = """
CREATE TABLE IF NOT EXISTS leases (
    lease_key    TEXT PRIMARY KEY,
    holder       TEXT NOT NULL,
    acquired_at  REAL NOT NULL,
    expires_at   REAL NOT NULL,
    committed         INTEGER NOT NULL DEFAULT 0,
    cancel_requested  INTEGER NOT NULL DEFAULT 0
);
"""

# Added after the first release; older lease files gain them on open.
_HANDSHAKE_COLUMNS = ("committed", "cancel_requested")


class SqliteLeaseManager:
    """Leases stored in a SQLite table shared between processes.

    Parameters
    ----------
    db_path:
        SQLite file holding the ``leases`` table. Created if missing.
    ttl_seconds:
        How long a granted lease stays valid without release. Must exceed
        the longest rollout; expired rows are taken over by new holders.
    poll_seconds:
        Interval between acquisition attempts while waiting.
    clock:
        Wall-clock source (``time.time``); injectable for tests.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        ttl_seconds: float = 1800.0,
        poll_seconds: float = 0.5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ttl = ttl_seconds
        self._poll = poll_seconds
        self._clock = clock
        with self._connect() as conn:
            conn.execute(_CREATE_LEASES)
            present = {row[1] for row in conn.execute("PRAGMA table_info(leases)")}
            for column in _HANDSHAKE_COLUMNS:
                if column not in present:
                    conn.execute(
                        f"ALTER TABLE leases ADD COLUMN {column} INTEGER NOT NULL DEFAULT 0"
                    )
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path), timeout=30, isolation_level=None, check_same_thread=False
        )
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def try_acquire(self, key: str, holder: str) -> bool:
        """Single non-blocking attempt. Returns True if *holder* now owns *key*."""
        now = self._clock()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT holder, expires_at FROM leases WHERE lease_key = ?", (key,)
            ).fetchone()
            if row is not None and row[1] > now and row[0] != holder:
                conn.execute("ROLLBACK")
                return False
            if row is not None and row[1] <= now:
                logger.warning(
                    "Lease %s held by %s expired; taking it over.", key, row[0]
                )
            conn.execute(
                "INSERT OR REPLACE INTO leases "
                "(lease_key, holder, acquired_at, expires_at, committed, cancel_requested) "
                "VALUES (?, ?, ?, ?, 0, 0)",
                (key, holder, now, now + self._ttl),
            )
            conn.execute("COMMIT")
            return True
        finally:
            conn.close()

    def release(self, key: str, holder: str) -> None:
        conn = self._connect()
        try:
            conn.execute(
                "DELETE FROM leases WHERE lease_key = ? AND holder = ?", (key, holder)
            )
        finally:
            conn.close()

    def holder(self, key: str) -> str | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT holder, expires_at FROM leases WHERE lease_key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if row is None or row[1] <= self._clock():
            return None
        return row[0]

    def request_cancel(self, key: str) -> str | None:
        now = self._clock()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT holder, expires_at, committed FROM leases WHERE lease_key = ?",
                (key,),
            ).fetchone()
            if row is None or row[1] <= now or row[2]:
                conn.execute("ROLLBACK")
                return None
            conn.execute(
                "UPDATE leases SET cancel_requested = 1 WHERE lease_key = ? AND holder = ?",
                (key, row[0]),
            )
            conn.execute("COMMIT")
        finally:
            conn.close()
        logger.info("Cancel requested for %s on lease %s.", row[0], key)
        return row[0]

    def cancel_requested(self, key: str, holder: str) -> bool:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT cancel_requested FROM leases WHERE lease_key = ? AND holder = ?",
                (key, holder),
            ).fetchone()
        finally:
            conn.close()
        return bool(row and row[0])

    def commit(self, key: str, holder: str) -> bool:
        conn = self._connect()
        try:
            # Single statement: atomic against a concurrent request_cancel.
            cursor = conn.execute(
                "UPDATE leases SET committed = 1 "
                "WHERE lease_key = ? AND holder = ? AND cancel_requested = 0",
                (key, holder),
            )
            return cursor.rowcount == 1
        finally:
            conn.close()

    @contextmanager
    def lease(self, key: str, holder: str, *, timeout: float) -> Iterator[None]:
        deadline = time.monotonic() + timeout
        while not self.try_acquire(key, holder):
            if time.monotonic() >= deadline:
                raise LeaseUnavailable(
                    f"Lease {key} held by {self.holder(key)}; "
                    f"gave up after {timeout:.1f}s"
                )
            time.sleep(self._poll)
        logger.debug("Lease %s acquired by %s (sqlite).", key, holder)
        try:
            yield
        finally:
            self.release(key, holder)
            logger.debug("Lease %s released by %s (sqlite).", key, holder)
