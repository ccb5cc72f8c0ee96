"""Named leases shared by every process that opens the same SQLite file.

Production rollouts hold a lease on the environment id, so two ``shipline``
invocations never update the same environment at once. A lease is one row
in the ``leases`` table, next to the run ledger: acquiring inserts the row
inside a ``BEGIN IMMEDIATE`` transaction and releasing deletes it. A row
older than ``stale_after`` seconds was left by a holder that died and may be
taken over.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import closing, contextmanager
from pathlib import Path

from shipline.core.errors import ProvisionError

logger = logging.getLogger(__name__)

_CREATE_LEASES = """
CREATE TABLE IF NOT EXISTS leases (
    lease_key     TEXT PRIMARY KEY,
    holder        TEXT NOT NULL,
    acquired_at   REAL NOT NULL
);
"""


class LeaseTimeout(ProvisionError):
    """Raised when a lease stays held by someone else past the wait limit."""


class EnvironmentLeases:
    """Mutual exclusion per key across threads and processes.

    Parameters
    ----------
    db_path:
        SQLite database holding the ``leases`` table.
    wait_timeout:
        Seconds to wait for a held lease before raising ``LeaseTimeout``.
    stale_after:
        Age in seconds after which a lease is considered abandoned.
    poll_interval:
        Seconds between acquisition attempts while waiting.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        wait_timeout: float = 1800.0,
        stale_after: float = 3600.0,
        poll_interval: float = 0.2,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._wait_timeout = wait_timeout
        self._stale_after = stale_after
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        with closing(self._connect()) as conn:
            conn.execute(_CREATE_LEASES)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the lease on *key* for the duration of the block."""
        holder = f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self._acquire(key, holder)
        try:
            yield
        finally:
            self._release(key, holder)

    def holder(self, key: str) -> str | None:
        """Current holder of *key*, or None when it is free."""
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT holder FROM leases WHERE lease_key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def _acquire(self, key: str, holder: str) -> None:
        give_up_at = self._clock() + self._wait_timeout
        waiting = False
        while True:
            current = self._try_acquire(key, holder)
            if current is None:
                logger.debug("Lease on %s taken by %s", key, holder)
                return
            if self._clock() >= give_up_at:
                raise LeaseTimeout(
                    f"{key} is still being updated by {current} after "
                    f"{self._wait_timeout:.0f}s"
                )
            if not waiting:
                logger.info("Waiting for %s: held by %s", key, current)
                waiting = True
            self._sleep(self._poll_interval)

    def _try_acquire(self, key: str, holder: str) -> str | None:
        """Take the lease. Returns None on success, else the current holder."""
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT holder, acquired_at FROM leases WHERE lease_key = ?", (key,)
                ).fetchone()
                now = self._clock()
                if row is not None and now - row[1] < self._stale_after:
                    conn.rollback()
                    return row[0]
                if row is not None:
                    logger.warning(
                        "Taking over stale lease on %s from %s (%.0fs old)",
                        key,
                        row[0],
                        now - row[1],
                    )
                conn.execute(
                    "INSERT OR REPLACE INTO leases (lease_key, holder, acquired_at) "
                    "VALUES (?, ?, ?)",
                    (key, holder, now),
                )
            except Exception:
                conn.rollback()
                raise
            conn.commit()
        return None

    def _release(self, key: str, holder: str) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "DELETE FROM leases WHERE lease_key = ? AND holder = ?", (key, holder)
            )
            conn.commit()
        logger.debug("Lease on %s released by %s", key, holder)
