"""score_etl.convert_fervidex

Converter for ir/fervidex: IIDX scores pushed by the Fervidex IR hook.

Record shape (one play):
  chart            "spa", "dph", ...   playtype + difficulty letter
  entry_id         in-game music ID
  custom           true for user-made charts (resolved by chart_sha256)
  ex_score, pgreat, great, good, bad, poor, fast, slow, combo_break
  clear_type       0..7
  gauge            gauge samples over the chart (sensor noise > 200 occurs)
  ghost            score history samples
  dead             present when the player died before the chart ended
  option           {gauge, range, style, style_2p, assist}

Context: version (selects the chart revision), time_received.
"""

from __future__ import annotations

from typing import Any

from score_etl.converter import (
    Converter,
    NaturalKey,
    lookup_enum,
    optional_int,
    require_int,
)
from score_etl.failures import InternalFailure, InvalidScoreFailure
from score_etl.models import Chart, ImportContext
from score_etl.normalize import parse_int, trim
from score_etl.score_utils import get_grade_and_percent

IMPORT_TYPE = "ir/fervidex"

GAUGE_SAMPLE_MAX = 200
GAUGE_TERMINAL_MAX = 100

FERVIDEX_LAMP_LOOKUP: dict[int, str] = {
    0: "NO PLAY",
    1: "FAILED",
    2: "ASSIST CLEAR",
    3: "EASY CLEAR",
    4: "CLEAR",
    5: "HARD CLEAR",
    6: "EX HARD CLEAR",
    7: "FULL COMBO",
}

_DIFFICULTY_BY_LETTER: dict[str, str] = {
    "b": "BEGINNER",
    "n": "NORMAL",
    "h": "HYPER",
    "a": "ANOTHER",
    "l": "LEGGENDARIA",
}

_ASSIST: dict[str | None, str] = {
    "FULL_ASSIST": "FULL ASSIST",
    "ASCR_LEGACY": "FULL ASSIST",
    "AUTO_SCRATCH": "AUTO SCRATCH",
    "LEGACY_NOTE": "LEGACY NOTE",
    None: "NO ASSIST",
}

_GAUGE: dict[str | None, str] = {
    "ASSISTED_EASY": "ASSISTED EASY",
    "EASY": "EASY",
    "EX_HARD": "EX-HARD",
    "HARD": "HARD",
    None: "NORMAL",
}

_RANGE: dict[str | None, str] = {
    "HIDDEN_PLUS": "HIDDEN+",
    "LIFT": "LIFT",
    "LIFT_SUD_PLUS": "LIFT SUD+",
    "SUDDEN_PLUS": "SUDDEN+",
    "SUD_PLUS_HID_PLUS": "SUD+ HID+",
    None: "NONE",
}

_RANDOM: dict[str | None, str] = {
    "RANDOM": "RANDOM",
    "S_RANDOM": "S-RANDOM",
    "R_RANDOM": "R-RANDOM",
    "MIRROR": "MIRROR",
    None: "NONRAN",
}


# ---------------------------------------------------------------------------
# Option mapping
# ---------------------------------------------------------------------------

def convert_assist(value: str | None) -> str:
    return lookup_enum(_ASSIST, value, "fervidex assist")


def convert_gauge(value: str | None) -> str:
    return lookup_enum(_GAUGE, value, "fervidex gauge")


def convert_range(value: str | None) -> str:
    return lookup_enum(_RANGE, value, "fervidex range")


def convert_random(value: str | None) -> str:
    return lookup_enum(_RANDOM, value, "fervidex style")


# ---------------------------------------------------------------------------
# Natural key / gauge helpers
# ---------------------------------------------------------------------------

def split_chart_ref(chart_ref: Any) -> NaturalKey:
    """Split a fervidex chart code ("spa") into (playtype, difficulty)."""
    if not isinstance(chart_ref, str) or len(chart_ref) != 3 or chart_ref[:2] not in ("sp", "dp"):
        raise InternalFailure(f"Invalid fervidex difficulty of {chart_ref}")
    difficulty = _DIFFICULTY_BY_LETTER.get(chart_ref[-1])
    if difficulty is None:
        raise InternalFailure(f"Invalid fervidex difficulty of {chart_ref}")
    return NaturalKey(playtype=chart_ref[:2].upper(), difficulty=difficulty)


def normalize_gauge_history(samples: Any) -> list[int | None]:
    """Return gauge samples; missing samples and sensor noise become None."""
    if samples is None:
        return []
    if not isinstance(samples, list):
        raise InvalidScoreFailure(f"Invalid gauge history of {samples!r} - expected a list.")
    history: list[int | None] = []
    for sample in samples:
        if sample is None:
            history.append(None)
            continue
        value = parse_int(sample)
        if value is None or value < 0:
            raise InvalidScoreFailure(f"Invalid gauge sample {sample!r}.")
        history.append(None if value > GAUGE_SAMPLE_MAX else value)
    return history


# ---------------------------------------------------------------------------
# Converter
# ---------------------------------------------------------------------------

class FervidexConverter(Converter):
    import_type = IMPORT_TYPE
    game = "iidx"
    service = "Fervidex"

    def split_natural_key(self, raw: dict[str, Any]) -> NaturalKey:
        return split_chart_ref(raw.get("chart"))

    def validate_bounds(self, raw: dict[str, Any]) -> None:
        for key in ("ex_score", "pgreat", "great", "good", "bad", "poor"):
            require_int(raw, key)
        for key in ("fast", "slow", "combo_break", "max_combo"):
            optional_int(raw, key)
        if raw.get("custom") is True:
            chart_sha256 = raw.get("chart_sha256")
            if not isinstance(chart_sha256, str) or trim(chart_sha256) is None:
                raise InvalidScoreFailure("Score has no chart_sha256 but is a custom?")
        else:
            require_int(raw, "entry_id")
        option = raw.get("option")
        if option is not None and not isinstance(option, dict):
            raise InvalidScoreFailure(f"Invalid option of {option!r} - expected an object.")

    def resolve_chart(
        self,
        raw: dict[str, Any],
        key: NaturalKey,
        context: ImportContext,
    ) -> Chart | None:
        if raw.get("custom") is True:
            return self.catalog.find_chart_by_hash(self.game, raw["chart_sha256"])
        return self.catalog.find_chart(
            self.game,
            require_int(raw, "entry_id"),
            key.playtype,
            key.difficulty,
            context.version,
        )

    def describe_reference(
        self,
        raw: dict[str, Any],
        key: NaturalKey,
        context: ImportContext,
    ) -> str:
        if raw.get("custom") is True:
            return f"custom chart {raw.get('chart_sha256')}"
        return (
            f"songID {raw.get('entry_id')} "
            f"({key.playtype} {key.difficulty} [{context.version}])"
        )

    def build_score_data(
        self,
        raw: dict[str, Any],
        chart: Chart,
        context: ImportContext,
    ) -> dict[str, Any]:
        gauge_history = normalize_gauge_history(raw.get("gauge"))
        gauge = gauge_history[-1] if gauge_history else None
        if gauge is not None and gauge > GAUGE_TERMINAL_MAX:
            raise InvalidScoreFailure(f"Invalid value of gauge {gauge}.")

        ex_score = require_int(raw, "ex_score")
        percent, grade = get_grade_and_percent(self.game, ex_score, chart)

        bad = require_int(raw, "bad")
        poor = require_int(raw, "poor")
        # BP after a premature death is unknowable, not zero.
        bp = None if raw.get("dead") else bad + poor

        lamp = lookup_enum(
            FERVIDEX_LAMP_LOOKUP, parse_int(raw.get("clear_type")), "fervidex clear_type"
        )

        return {
            "score": ex_score,
            "percent": percent,
            "grade": grade,
            "lamp": lamp,
            "judgements": {
                "pgreat": require_int(raw, "pgreat"),
                "great": require_int(raw, "great"),
                "good": require_int(raw, "good"),
                "bad": bad,
                "poor": poor,
            },
            "hit_meta": {
                "fast": optional_int(raw, "fast"),
                "slow": optional_int(raw, "slow"),
                "max_combo": None,
                "gauge_history": gauge_history,
                "score_history": raw.get("ghost"),
                "gauge": gauge,
                "bp": bp,
                "combo_break": optional_int(raw, "combo_break"),
                "gsm": raw.get("2dx-gsm"),
            },
        }

    def build_score_meta(self, raw: dict[str, Any], chart: Chart) -> dict[str, Any]:
        option = raw.get("option") or {}
        if chart.playtype == "SP":
            random: str | tuple[str, str] = convert_random(option.get("style"))
        else:
            random = (convert_random(option.get("style")), convert_random(option.get("style_2p")))
        return {
            "assist": convert_assist(option.get("assist")),
            "gauge": convert_gauge(option.get("gauge")),
            "random": random,
            "range": convert_range(option.get("range")),
        }
