"""score_etl.converter

Converter contract shared by every import-source format.

Converter.convert() runs the same steps for every format:

  1. split_natural_key  derive (playtype, difficulty) from the record
                        -> InternalFailure if the discriminator is malformed
  2. validate_bounds    check chart-independent numeric fields
                        -> InvalidScoreFailure when out of domain
  3. resolve_chart      catalog lookup using key + import context
                        -> SongOrChartNotFoundFailure when absent
  4. parent song        catalog lookup of chart.song_id
                        -> InternalFailure when absent (catalog desync)
  5. build_score_data   score, percent/grade, lamp, judgements, hit metadata
  6. build_score_meta   play options/modifiers

Subclasses implement the format-specific steps; the orchestrator only ever
calls convert().  Converters never write to storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from score_etl.catalog import CatalogLookup
from score_etl.failures import (
    InternalFailure,
    InvalidScoreFailure,
    SongOrChartNotFoundFailure,
)
from score_etl.models import Chart, ConvertedScore, DryScore, ImportContext
from score_etl.normalize import parse_int

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class NaturalKey:
    playtype: str
    difficulty: str


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def require_int(raw: dict[str, Any], key: str, minimum: int | None = 0) -> int:
    """Return raw[key] as an int >= minimum, else raise InvalidScoreFailure."""
    value = parse_int(raw.get(key))
    if value is None:
        raise InvalidScoreFailure(f"Invalid {key} of {raw.get(key)!r} - expected an integer.")
    if minimum is not None and value < minimum:
        raise InvalidScoreFailure(f"Invalid {key} of {value} - must be >= {minimum}.")
    return value


def optional_int(raw: dict[str, Any], key: str, minimum: int | None = 0) -> int | None:
    if raw.get(key) is None:
        return None
    return require_int(raw, key, minimum)


def lookup_enum(table: dict[Any, str], value: Any, label: str) -> str:
    """Map a source enum value to its canonical name.

    An unknown value is an unhandled new source value, not a user error.
    """
    try:
        return table[value]
    except (KeyError, TypeError):
        raise InternalFailure(f"Unknown {label} value {value!r}.") from None


# ---------------------------------------------------------------------------
# Base converter
# ---------------------------------------------------------------------------

class Converter:
    """Base class for per-format converters."""

    import_type: str = ""
    game: str = ""
    service: str = ""

    def __init__(self, catalog: CatalogLookup) -> None:
        self.catalog = catalog

    def convert(self, raw: Any, context: ImportContext) -> ConvertedScore:
        if not isinstance(raw, dict):
            raise InvalidScoreFailure(f"Record is not an object: {type(raw).__name__}.")

        key = self.split_natural_key(raw)
        self.validate_bounds(raw)

        chart = self.resolve_chart(raw, key, context)
        if chart is None:
            raise SongOrChartNotFoundFailure(
                f"Could not find chart for {self.describe_reference(raw, key, context)}",
                raw,
                context,
            )

        song = self.catalog.find_song(self.game, chart.song_id)
        if song is None:
            log.error("Song %s (%s) has no parent song?", chart.song_id, self.game)
            raise InternalFailure(f"Song {chart.song_id} ({self.game}) has no parent song?")

        dry = DryScore(
            game=self.game,
            service=self.service,
            import_type=self.import_type,
            time_achieved=self.time_achieved(raw, context),
            score_data=self.build_score_data(raw, chart, context),
            score_meta=self.build_score_meta(raw, chart),
        )
        return ConvertedScore(song=song, chart=chart, dry_score=dry)

    # -- format-specific capabilities ---------------------------------------

    def split_natural_key(self, raw: dict[str, Any]) -> NaturalKey:
        raise NotImplementedError

    def validate_bounds(self, raw: dict[str, Any]) -> None:
        raise NotImplementedError

    def resolve_chart(
        self,
        raw: dict[str, Any],
        key: NaturalKey,
        context: ImportContext,
    ) -> Chart | None:
        raise NotImplementedError

    def describe_reference(
        self,
        raw: dict[str, Any],
        key: NaturalKey,
        context: ImportContext,
    ) -> str:
        return f"{key.playtype} {key.difficulty}"

    def time_achieved(self, raw: dict[str, Any], context: ImportContext) -> int | None:
        return context.time_received

    def build_score_data(
        self,
        raw: dict[str, Any],
        chart: Chart,
        context: ImportContext,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def build_score_meta(self, raw: dict[str, Any], chart: Chart) -> dict[str, Any]:
        return {}
