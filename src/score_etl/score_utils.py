"""Grade and percent derivation from a raw score and chart metadata."""

from __future__ import annotations

from score_etl.failures import InternalFailure, InvalidScoreFailure
from score_etl.models import Chart

# IIDX grade boundaries in eighteenths of the max EX score.
# F E D C B A AA AAA MAX- MAX  ->  0, 2/9, 3/9, ... 8/9, 17/18, 1
_IIDX_GRADES: tuple[tuple[str, int], ...] = (
    ("MAX", 18),
    ("MAX-", 17),
    ("AAA", 16),
    ("AA", 14),
    ("A", 12),
    ("B", 10),
    ("C", 8),
    ("D", 6),
    ("E", 4),
    ("F", 0),
)


def iidx_max_score(chart: Chart) -> int:
    return chart.notecount * 2


def get_grade_and_percent(game: str, score: int, chart: Chart) -> tuple[float, str]:
    """Return (percent, grade) for score on chart.

    Raises:
        ConversionFailure(INVALID_SCORE): score is negative or above the
            chart maximum (values are rejected, never clamped).
        ConversionFailure(INTERNAL): game is unsupported or the chart has no
            usable notecount.
    """
    if game != "iidx":
        raise InternalFailure(f"No grade table for game {game!r}.")
    max_score = iidx_max_score(chart)
    if max_score <= 0:
        raise InternalFailure(f"Chart {chart.chart_id} has invalid notecount {chart.notecount}.")
    if score < 0:
        raise InvalidScoreFailure(f"Invalid score of {score} - must be non-negative.")

    percent = 100 * score / max_score
    if percent > 100:
        raise InvalidScoreFailure(
            f"Invalid percent of {percent} - expected a value between 0 and 100."
        )

    for grade, eighteenths in _IIDX_GRADES:
        if score * 18 >= max_score * eighteenths:
            return percent, grade
    return percent, "F"
