"""score_etl.models

Reference entities (Song, Chart), import context, and the score shapes a
converter produces.

    DryScore        user-independent converter output
    ConvertedScore  (song, chart, dry_score) as returned by Converter.convert
    CanonicalScore  DryScore bound to a user, with its dedup key (score_id)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from score_etl.normalize import stable_hash


# ---------------------------------------------------------------------------
# Catalog entities (read-only to the pipeline)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Song:
    song_id: int
    game: str
    title: str
    artist: str | None = None


@dataclass(frozen=True)
class Chart:
    """One playable variant of a Song.

    versions is the version window the chart revision is authoritative for.
    is_primary marks the revision used when a source carries no version.
    chart_hash identifies user-made charts that have no in-game ID.
    """

    chart_id: str
    song_id: int
    game: str
    playtype: str
    difficulty: str
    notecount: int
    in_game_id: int | None = None
    versions: tuple[str, ...] = ()
    is_primary: bool = True
    chart_hash: str | None = None


# ---------------------------------------------------------------------------
# Import context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImportContext:
    """Source side-channel data shared by every record of one import run.

    version:        game version the source reported (selects chart revision)
    time_received:  epoch milliseconds the payload was received
    """

    version: str | None = None
    time_received: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "time_received": self.time_received}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ImportContext":
        data = data or {}
        return cls(version=data.get("version"), time_received=data.get("time_received"))


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

@dataclass
class DryScore:
    game: str
    service: str
    import_type: str
    time_achieved: int | None
    score_data: dict[str, Any]
    score_meta: dict[str, Any]
    comment: str | None = None


@dataclass
class ConvertedScore:
    song: Song
    chart: Chart
    dry_score: DryScore


@dataclass
class CanonicalScore:
    score_id: str
    user_id: str
    chart_id: str
    song_id: int
    game: str
    playtype: str
    difficulty: str
    service: str
    import_type: str
    time_achieved: int | None
    score_data: dict[str, Any] = field(default_factory=dict)
    score_meta: dict[str, Any] = field(default_factory=dict)
    comment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def build_score_id(user_id: str, chart_id: str, dry: DryScore) -> str:
    """Return the dedup key for a score.

    Derived only from discriminating fields, so converting the same record
    against the same catalog state always yields the same key.
    """
    data = dry.score_data
    digest = stable_hash(
        user_id,
        chart_id,
        data.get("score"),
        data.get("lamp"),
        data.get("judgements") or {},
        dry.time_achieved,
    )
    return "R" + digest[:40]


def make_canonical_score(user_id: str, converted: ConvertedScore) -> CanonicalScore:
    dry = converted.dry_score
    chart = converted.chart
    return CanonicalScore(
        score_id=build_score_id(user_id, chart.chart_id, dry),
        user_id=user_id,
        chart_id=chart.chart_id,
        song_id=converted.song.song_id,
        game=dry.game,
        playtype=chart.playtype,
        difficulty=chart.difficulty,
        service=dry.service,
        import_type=dry.import_type,
        time_achieved=dry.time_achieved,
        score_data=dry.score_data,
        score_meta=dry.score_meta,
        comment=dry.comment,
    )
