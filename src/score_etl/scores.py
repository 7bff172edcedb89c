"""score_etl.scores

Committed-score storage, the score blacklist, and the personal-best merge
collaborator interface.

commit() is idempotent on score_id: committing an already-present score is
a dedup hit (returns False), never a second row.
"""

from __future__ import annotations

import threading
from typing import Protocol

import psycopg
from psycopg.types.json import Jsonb

from score_etl.models import CanonicalScore


class ScoreStore(Protocol):
    def commit(self, score: CanonicalScore) -> bool:
        """Persist score.  Return True if inserted, False on a dedup hit."""
        ...

    def exists(self, score_id: str) -> bool:
        ...


class PersonalBestMerge(Protocol):
    def apply(self, score: CanonicalScore) -> None:
        """Merge score into the user's personal bests.  Raises on failure."""
        ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

class PostgresScoreStore:
    """Writes to the score table.  Caller manages the transaction."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def commit(self, score: CanonicalScore) -> bool:
        row = self._conn.execute(
            """
            INSERT INTO score
              (score_id, user_id, chart_id, song_id, game, playtype, difficulty,
               service, import_type, time_achieved, score_data, score_meta, comment)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (score_id) DO NOTHING
            RETURNING score_id
            """,
            (
                score.score_id, score.user_id, score.chart_id, score.song_id,
                score.game, score.playtype, score.difficulty,
                score.service, score.import_type, score.time_achieved,
                Jsonb(score.score_data), Jsonb(score.score_meta), score.comment,
            ),
        ).fetchone()
        return row is not None

    def exists(self, score_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM score WHERE score_id = %s", (score_id,)
        ).fetchone()
        return row is not None


def load_blacklist(conn: psycopg.Connection, user_id: str | None = None) -> set[str]:
    """Return blacklisted score IDs, optionally scoped to one user."""
    if user_id is None:
        rows = conn.execute("SELECT score_id FROM score_blacklist").fetchall()
    else:
        rows = conn.execute(
            "SELECT score_id FROM score_blacklist WHERE user_id = %s", (user_id,)
        ).fetchall()
    return {str(r[0]) for r in rows}


# ---------------------------------------------------------------------------
# In-memory (unit tests / dry runs)
# ---------------------------------------------------------------------------

class InMemoryScoreStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.scores: dict[str, CanonicalScore] = {}

    def commit(self, score: CanonicalScore) -> bool:
        with self._lock:
            if score.score_id in self.scores:
                return False
            self.scores[score.score_id] = score
            return True

    def exists(self, score_id: str) -> bool:
        with self._lock:
            return score_id in self.scores


class NullPersonalBestMerge:
    """No-op merge for runs without the downstream PB collaborator."""

    def apply(self, score: CanonicalScore) -> None:
        return None
