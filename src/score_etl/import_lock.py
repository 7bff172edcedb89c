"""score_etl.import_lock

Per-user single-flight lock.  One row per user_id; existence of the row
means a run is in flight for that user.

Crash recovery is heartbeat + TTL:
  - every row carries acquired_at and heartbeat_at; the holder refreshes
    heartbeat_at while it works
  - acquire() reclaims a row whose heartbeat is older than ttl_seconds
  - sweep_stale() deletes every expired row (run at process start-up)

release() only deletes the row if it is still owned by the caller's run_id,
so a run whose lock was reclaimed cannot release its successor's lock.
heartbeat() returns False in that case; the holder must stop writing.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Protocol

import psycopg

from score_etl.failures import ImportConflictError
from score_etl.normalize import utc_now

log = logging.getLogger(__name__)

IMPORT_LOCK_TABLE = "import_lock"
RECONCILE_LOCK_TABLE = "reconcile_lock"
_LOCK_TABLES = frozenset({IMPORT_LOCK_TABLE, RECONCILE_LOCK_TABLE})


class ImportLock(Protocol):
    name: str
    ttl_seconds: float

    def acquire(self, user_id: str, run_id: str) -> None:
        """Take the lock for user_id or raise ImportConflictError."""
        ...

    def heartbeat(self, user_id: str, run_id: str) -> bool:
        """Refresh the lock; return False if run_id no longer owns it."""
        ...

    def release(self, user_id: str, run_id: str) -> None:
        ...

    def sweep_stale(self) -> int:
        """Delete expired locks; return how many were removed."""
        ...


@contextmanager
def held(lock: ImportLock, user_id: str, run_id: str) -> Iterator[None]:
    """Hold lock for the duration of the block; release on every exit path."""
    lock.acquire(user_id, run_id)
    try:
        yield
    finally:
        lock.release(user_id, run_id)


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

class PostgresImportLock:
    """Lock rows in import_lock (or reconcile_lock).

    conn must be in autocommit mode: lock writes have to be visible to other
    sessions immediately, independently of the run's own transaction.
    """

    def __init__(
        self,
        conn: psycopg.Connection,
        ttl_seconds: float,
        table: str = IMPORT_LOCK_TABLE,
    ) -> None:
        if table not in _LOCK_TABLES:
            raise ValueError(f"unknown lock table {table!r}")
        self._conn = conn
        self.ttl_seconds = float(ttl_seconds)
        self.name = table

    def acquire(self, user_id: str, run_id: str) -> None:
        row = self._conn.execute(
            f"""
            INSERT INTO {self.name} (user_id, run_id, acquired_at, heartbeat_at)
            VALUES (%s, %s, now(), now())
            ON CONFLICT (user_id) DO UPDATE SET
              run_id = EXCLUDED.run_id,
              acquired_at = EXCLUDED.acquired_at,
              heartbeat_at = EXCLUDED.heartbeat_at
            WHERE {self.name}.heartbeat_at < now() - make_interval(secs => %s)
            RETURNING (xmax = 0) AS inserted
            """,
            (user_id, run_id, self.ttl_seconds),
        ).fetchone()
        if row is None:
            raise ImportConflictError(user_id, self.name)
        if not row[0]:
            log.warning("%s: reclaimed stale lock for user %s (run %s)", self.name, user_id, run_id)

    def heartbeat(self, user_id: str, run_id: str) -> bool:
        cur = self._conn.execute(
            f"UPDATE {self.name} SET heartbeat_at = now() WHERE user_id = %s AND run_id = %s",
            (user_id, run_id),
        )
        return cur.rowcount == 1

    def release(self, user_id: str, run_id: str) -> None:
        self._conn.execute(
            f"DELETE FROM {self.name} WHERE user_id = %s AND run_id = %s",
            (user_id, run_id),
        )

    def sweep_stale(self) -> int:
        rows = self._conn.execute(
            f"""
            DELETE FROM {self.name}
            WHERE heartbeat_at < now() - make_interval(secs => %s)
            RETURNING user_id, run_id
            """,
            (self.ttl_seconds,),
        ).fetchall()
        for user_id, run_id in rows:
            log.warning("%s: swept stale lock for user %s (run %s)", self.name, user_id, run_id)
        return len(rows)


# ---------------------------------------------------------------------------
# In-memory (unit tests / single-process deployments)
# ---------------------------------------------------------------------------

class InMemoryImportLock:
    def __init__(
        self,
        ttl_seconds: float,
        name: str = IMPORT_LOCK_TABLE,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.name = name
        self.ttl_seconds = float(ttl_seconds)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._mutex = threading.Lock()
        self._held: dict[str, tuple[str, datetime]] = {}

    def _expired(self, heartbeat_at: datetime) -> bool:
        return heartbeat_at < self._clock() - self._ttl

    def acquire(self, user_id: str, run_id: str) -> None:
        with self._mutex:
            current = self._held.get(user_id)
            if current is not None:
                if not self._expired(current[1]):
                    raise ImportConflictError(user_id, self.name)
                log.warning(
                    "%s: reclaimed stale lock for user %s (run %s)", self.name, user_id, run_id
                )
            self._held[user_id] = (run_id, self._clock())

    def heartbeat(self, user_id: str, run_id: str) -> bool:
        with self._mutex:
            current = self._held.get(user_id)
            if current is None or current[0] != run_id:
                return False
            self._held[user_id] = (run_id, self._clock())
            return True

    def release(self, user_id: str, run_id: str) -> None:
        with self._mutex:
            current = self._held.get(user_id)
            if current is not None and current[0] == run_id:
                del self._held[user_id]

    def sweep_stale(self) -> int:
        with self._mutex:
            stale = [u for u, (_, hb) in self._held.items() if self._expired(hb)]
            for user_id in stale:
                log.warning("%s: swept stale lock for user %s", self.name, user_id)
                del self._held[user_id]
        return len(stale)

    def is_held(self, user_id: str) -> bool:
        with self._mutex:
            return user_id in self._held
