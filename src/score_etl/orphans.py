"""score_etl.orphans

Orphan store: durable holding area for records whose chart or song was not
in the catalog at import time.

Orphans are keyed by a content hash of (user_id, import_type, raw record,
import context), so re-orphaning the same record is a no-op upsert.

Lifecycle:
  created    SongOrChartNotFoundFailure during import
  retried    by the reconciler; retry_count/last_attempt_at/last_error updated
  removed    converted and committed, or matched the score blacklist
  abandoned  retry ceiling reached; kept for operator inspection and
             excluded from further sweeps
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

from score_etl.models import ImportContext
from score_etl.normalize import stable_hash, utc_now


@dataclass
class OrphanRecord:
    orphan_id: str
    user_id: str
    import_type: str
    raw: dict[str, Any]
    context: dict[str, Any]
    game: str | None = None
    first_seen_at: datetime = field(default_factory=utc_now)
    last_attempt_at: datetime | None = None
    retry_count: int = 0
    abandoned: bool = False
    last_error: str | None = None

    @property
    def import_context(self) -> ImportContext:
        return ImportContext.from_dict(self.context)


def build_orphan_id(
    user_id: str,
    import_type: str,
    raw: Any,
    context: dict[str, Any],
) -> str:
    return stable_hash(user_id, import_type, raw, context)


def make_orphan(
    user_id: str,
    import_type: str,
    raw: dict[str, Any],
    context: ImportContext,
    game: str | None = None,
    error: str | None = None,
    now: datetime | None = None,
) -> OrphanRecord:
    ctx = context.to_dict()
    return OrphanRecord(
        orphan_id=build_orphan_id(user_id, import_type, raw, ctx),
        user_id=user_id,
        import_type=import_type,
        raw=raw,
        context=ctx,
        game=game,
        first_seen_at=now or utc_now(),
        last_error=error,
    )


class OrphanStore(Protocol):
    def store(self, orphan: OrphanRecord) -> bool:
        """Upsert by orphan_id.  Return True if a new orphan was created."""
        ...

    def list(
        self,
        user_id: str | None = None,
        include_abandoned: bool = False,
    ) -> list[OrphanRecord]:
        """Return orphans ordered by (first_seen_at, orphan_id)."""
        ...

    def get(self, orphan_id: str) -> OrphanRecord | None:
        ...

    def record_attempt(self, orphan_id: str, at: datetime, error: str | None) -> int:
        """Bump retry_count; return the new count (0 if the orphan is gone)."""
        ...

    def mark_abandoned(self, orphan_id: str) -> None:
        ...

    def remove(self, orphan_id: str) -> bool:
        """Delete an orphan.  Return False if another sweep already removed it."""
        ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

_ORPHAN_COLS = (
    "orphan_id, user_id, import_type, raw, context, game, first_seen_at, "
    "last_attempt_at, retry_count, abandoned, last_error"
)


def _orphan_from_row(row: tuple) -> OrphanRecord:
    return OrphanRecord(
        orphan_id=row[0],
        user_id=row[1],
        import_type=row[2],
        raw=row[3],
        context=row[4] or {},
        game=row[5],
        first_seen_at=row[6],
        last_attempt_at=row[7],
        retry_count=int(row[8]),
        abandoned=bool(row[9]),
        last_error=row[10],
    )


class PostgresOrphanStore:
    """orphan_score table.  Caller manages the transaction."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def store(self, orphan: OrphanRecord) -> bool:
        row = self._conn.execute(
            """
            INSERT INTO orphan_score
              (orphan_id, user_id, import_type, raw, context, game,
               first_seen_at, last_error)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (orphan_id) DO NOTHING
            RETURNING orphan_id
            """,
            (
                orphan.orphan_id, orphan.user_id, orphan.import_type,
                Jsonb(orphan.raw), Jsonb(orphan.context), orphan.game,
                orphan.first_seen_at, orphan.last_error,
            ),
        ).fetchone()
        return row is not None

    def list(
        self,
        user_id: str | None = None,
        include_abandoned: bool = False,
    ) -> list[OrphanRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if not include_abandoned:
            clauses.append("NOT abandoned")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT {_ORPHAN_COLS} FROM orphan_score {where} "
            "ORDER BY first_seen_at ASC, orphan_id ASC",
            params,
        ).fetchall()
        return [_orphan_from_row(r) for r in rows]

    def get(self, orphan_id: str) -> OrphanRecord | None:
        row = self._conn.execute(
            f"SELECT {_ORPHAN_COLS} FROM orphan_score WHERE orphan_id = %s",
            (orphan_id,),
        ).fetchone()
        return _orphan_from_row(row) if row else None

    def record_attempt(self, orphan_id: str, at: datetime, error: str | None) -> int:
        row = self._conn.execute(
            """
            UPDATE orphan_score
            SET retry_count = retry_count + 1,
                last_attempt_at = %s,
                last_error = %s
            WHERE orphan_id = %s
            RETURNING retry_count
            """,
            (at, error, orphan_id),
        ).fetchone()
        return int(row[0]) if row else 0

    def mark_abandoned(self, orphan_id: str) -> None:
        self._conn.execute(
            "UPDATE orphan_score SET abandoned = TRUE WHERE orphan_id = %s",
            (orphan_id,),
        )

    def remove(self, orphan_id: str) -> bool:
        row = self._conn.execute(
            "DELETE FROM orphan_score WHERE orphan_id = %s RETURNING orphan_id",
            (orphan_id,),
        ).fetchone()
        return row is not None


# ---------------------------------------------------------------------------
# In-memory (unit tests / dry runs)
# ---------------------------------------------------------------------------

class InMemoryOrphanStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._orphans: dict[str, OrphanRecord] = {}

    def store(self, orphan: OrphanRecord) -> bool:
        with self._lock:
            if orphan.orphan_id in self._orphans:
                return False
            self._orphans[orphan.orphan_id] = replace(orphan)
            return True

    def list(
        self,
        user_id: str | None = None,
        include_abandoned: bool = False,
    ) -> list[OrphanRecord]:
        with self._lock:
            found = [
                replace(o) for o in self._orphans.values()
                if (user_id is None or o.user_id == user_id)
                and (include_abandoned or not o.abandoned)
            ]
        return sorted(found, key=lambda o: (o.first_seen_at, o.orphan_id))

    def get(self, orphan_id: str) -> OrphanRecord | None:
        with self._lock:
            orphan = self._orphans.get(orphan_id)
            return replace(orphan) if orphan else None

    def record_attempt(self, orphan_id: str, at: datetime, error: str | None) -> int:
        with self._lock:
            orphan = self._orphans.get(orphan_id)
            if orphan is None:
                return 0
            orphan.retry_count += 1
            orphan.last_attempt_at = at
            orphan.last_error = error
            return orphan.retry_count

    def mark_abandoned(self, orphan_id: str) -> None:
        with self._lock:
            orphan = self._orphans.get(orphan_id)
            if orphan is not None:
                orphan.abandoned = True

    def remove(self, orphan_id: str) -> bool:
        with self._lock:
            return self._orphans.pop(orphan_id, None) is not None

    def __len__(self) -> int:
        return len(self._orphans)
