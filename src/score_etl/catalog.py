"""score_etl.catalog

Read-only chart/song lookups against the reference catalog.

A lookup that finds nothing returns None.  That is an expected outcome
(catalog data may simply not be loaded yet); converters turn it into a
retryable SongOrChartNotFoundFailure.
"""

from __future__ import annotations

from typing import Protocol

import psycopg

from score_etl.models import Chart, Song


class CatalogLookup(Protocol):
    def find_chart(
        self,
        game: str,
        in_game_id: int,
        playtype: str,
        difficulty: str,
        version: str | None,
    ) -> Chart | None:
        """Resolve a natural-key reference.

        version=None selects the primary chart revision.
        """
        ...

    def find_chart_by_hash(self, game: str, chart_hash: str) -> Chart | None:
        ...

    def find_song(self, game: str, song_id: int) -> Song | None:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL catalog
# ---------------------------------------------------------------------------

_CHART_COLS = (
    "chart_id, song_id, game, playtype, difficulty, notecount, "
    "in_game_id, versions, is_primary, chart_hash"
)


def _chart_from_row(row: tuple) -> Chart:
    return Chart(
        chart_id=str(row[0]),
        song_id=int(row[1]),
        game=row[2],
        playtype=row[3],
        difficulty=row[4],
        notecount=int(row[5]),
        in_game_id=row[6],
        versions=tuple(row[7] or ()),
        is_primary=bool(row[8]),
        chart_hash=row[9],
    )


class PostgresCatalog:
    """Catalog backed by the chart and song tables."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def find_chart(
        self,
        game: str,
        in_game_id: int,
        playtype: str,
        difficulty: str,
        version: str | None,
    ) -> Chart | None:
        if version is None:
            row = self._conn.execute(
                f"""
                SELECT {_CHART_COLS} FROM chart
                WHERE game = %s AND in_game_id = %s
                  AND playtype = %s AND difficulty = %s
                  AND is_primary
                ORDER BY chart_id ASC LIMIT 1
                """,
                (game, in_game_id, playtype, difficulty),
            ).fetchone()
        else:
            row = self._conn.execute(
                f"""
                SELECT {_CHART_COLS} FROM chart
                WHERE game = %s AND in_game_id = %s
                  AND playtype = %s AND difficulty = %s
                  AND %s = ANY(versions)
                ORDER BY chart_id ASC LIMIT 1
                """,
                (game, in_game_id, playtype, difficulty, version),
            ).fetchone()
        return _chart_from_row(row) if row else None

    def find_chart_by_hash(self, game: str, chart_hash: str) -> Chart | None:
        row = self._conn.execute(
            f"SELECT {_CHART_COLS} FROM chart WHERE game = %s AND chart_hash = %s "
            "ORDER BY chart_id ASC LIMIT 1",
            (game, chart_hash),
        ).fetchone()
        return _chart_from_row(row) if row else None

    def find_song(self, game: str, song_id: int) -> Song | None:
        row = self._conn.execute(
            "SELECT song_id, game, title, artist FROM song WHERE game = %s AND song_id = %s",
            (game, song_id),
        ).fetchone()
        if not row:
            return None
        return Song(song_id=int(row[0]), game=row[1], title=row[2], artist=row[3])


# ---------------------------------------------------------------------------
# In-memory catalog (unit tests / dry runs)
# ---------------------------------------------------------------------------

class InMemoryCatalog:
    """Dict-backed catalog.  Reads are safe from any number of threads."""

    def __init__(
        self,
        songs: list[Song] | None = None,
        charts: list[Chart] | None = None,
    ) -> None:
        self._songs: dict[tuple[str, int], Song] = {}
        self._charts: dict[str, Chart] = {}
        for song in songs or []:
            self.add_song(song)
        for chart in charts or []:
            self.add_chart(chart)

    def add_song(self, song: Song) -> None:
        self._songs[(song.game, song.song_id)] = song

    def add_chart(self, chart: Chart) -> None:
        self._charts[chart.chart_id] = chart

    def remove_song(self, game: str, song_id: int) -> None:
        self._songs.pop((game, song_id), None)

    def find_chart(
        self,
        game: str,
        in_game_id: int,
        playtype: str,
        difficulty: str,
        version: str | None,
    ) -> Chart | None:
        for chart in sorted(self._charts.values(), key=lambda c: c.chart_id):
            if (chart.game, chart.in_game_id, chart.playtype, chart.difficulty) != (
                game, in_game_id, playtype, difficulty,
            ):
                continue
            if version is None and chart.is_primary:
                return chart
            if version is not None and version in chart.versions:
                return chart
        return None

    def find_chart_by_hash(self, game: str, chart_hash: str) -> Chart | None:
        for chart in sorted(self._charts.values(), key=lambda c: c.chart_id):
            if chart.game == game and chart.chart_hash == chart_hash:
                return chart
        return None

    def find_song(self, game: str, song_id: int) -> Song | None:
        return self._songs.get((game, song_id))
