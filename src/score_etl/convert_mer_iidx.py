"""score_etl.convert_mer_iidx

Converter for file/mer-iidx: the JSON score export produced by MER.

Record shape:
  music_id     in-game music ID
  play_type    SINGLE | DOUBLE
  diff_type    BEGINNER | NORMAL | HYPER | ANOTHER | LEGGENDARIA
  score        EX score
  miss_count   -1 when the game did not record it
  clear_type   "NO PLAY" ... "FULLCOMBO CLEAR"
  update_time  "YYYY-MM-DD HH:MM:SS" (UTC)

MER files carry no game version, so the primary chart revision is used.
"""

from __future__ import annotations

from typing import Any

from score_etl.converter import Converter, NaturalKey, lookup_enum, require_int
from score_etl.failures import InternalFailure, InvalidScoreFailure
from score_etl.models import Chart, ImportContext
from score_etl.normalize import parse_ts_ms
from score_etl.score_utils import get_grade_and_percent

IMPORT_TYPE = "file/mer-iidx"

MER_LAMP_LOOKUP: dict[str, str] = {
    "NO PLAY": "NO PLAY",
    "FAILED": "FAILED",
    "ASSIST CLEAR": "ASSIST CLEAR",
    "EASY CLEAR": "EASY CLEAR",
    "CLEAR": "CLEAR",
    "HARD CLEAR": "HARD CLEAR",
    "EX HARD CLEAR": "EX HARD CLEAR",
    "FULLCOMBO CLEAR": "FULL COMBO",
}

_PLAYTYPES = {"SINGLE": "SP", "DOUBLE": "DP"}
_DIFFICULTIES = frozenset({"BEGINNER", "NORMAL", "HYPER", "ANOTHER", "LEGGENDARIA"})


class MerIIDXConverter(Converter):
    import_type = IMPORT_TYPE
    game = "iidx"
    service = "MER"

    def split_natural_key(self, raw: dict[str, Any]) -> NaturalKey:
        play_type = raw.get("play_type")
        difficulty = raw.get("diff_type")
        playtype = _PLAYTYPES.get(play_type) if isinstance(play_type, str) else None
        if playtype is None or not isinstance(difficulty, str) or difficulty not in _DIFFICULTIES:
            raise InternalFailure(
                f"Invalid MER chart reference {raw.get('play_type')!r}/{difficulty!r}"
            )
        return NaturalKey(playtype=playtype, difficulty=difficulty)

    def validate_bounds(self, raw: dict[str, Any]) -> None:
        require_int(raw, "music_id", minimum=1)
        require_int(raw, "score")
        require_int(raw, "miss_count", minimum=-1)
        if parse_ts_ms(raw.get("update_time")) is None:
            raise InvalidScoreFailure(f"Invalid update_time of {raw.get('update_time')!r}.")

    def resolve_chart(
        self,
        raw: dict[str, Any],
        key: NaturalKey,
        context: ImportContext,
    ) -> Chart | None:
        return self.catalog.find_chart(
            self.game, require_int(raw, "music_id", minimum=1), key.playtype, key.difficulty, None
        )

    def describe_reference(
        self,
        raw: dict[str, Any],
        key: NaturalKey,
        context: ImportContext,
    ) -> str:
        return f"music_id {raw.get('music_id')} ({key.playtype} {key.difficulty})"

    def time_achieved(self, raw: dict[str, Any], context: ImportContext) -> int | None:
        return parse_ts_ms(raw.get("update_time"))

    def build_score_data(
        self,
        raw: dict[str, Any],
        chart: Chart,
        context: ImportContext,
    ) -> dict[str, Any]:
        score = require_int(raw, "score")
        percent, grade = get_grade_and_percent(self.game, score, chart)
        miss_count = require_int(raw, "miss_count", minimum=-1)
        return {
            "score": score,
            "percent": percent,
            "grade": grade,
            "lamp": lookup_enum(MER_LAMP_LOOKUP, raw.get("clear_type"), "MER clear_type"),
            "judgements": {},
            "hit_meta": {
                "bp": None if miss_count == -1 else miss_count,
            },
        }
