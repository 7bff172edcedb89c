"""Unit tests for score_etl.convert_mer_iidx."""

from datetime import datetime, timezone

import pytest

from sample_data import CHART_511_SPA, SONG_511, mer
from score_etl.convert_mer_iidx import MerIIDXConverter
from score_etl.failures import ConversionFailure, FailureKind
from score_etl.models import ImportContext

CONTEXT = ImportContext()


def _fail(catalog, raw) -> ConversionFailure:
    with pytest.raises(ConversionFailure) as exc_info:
        MerIIDXConverter(catalog).convert(raw, CONTEXT)
    return exc_info.value


class TestMerIIDXConverter:
    def test_converts_valid_score(self, catalog, mer_score):
        res = MerIIDXConverter(catalog).convert(mer_score, CONTEXT)

        assert res.song == SONG_511
        assert res.chart == CHART_511_SPA
        dry = res.dry_score
        assert dry.service == "MER"
        assert dry.import_type == "file/mer-iidx"
        assert dry.time_achieved == int(
            datetime(2021, 8, 7, 21, 33, 10, tzinfo=timezone.utc).timestamp() * 1000
        )
        assert dry.score_data["score"] == 1200
        assert dry.score_data["percent"] == pytest.approx(100 * 1200 / 1572)
        assert dry.score_data["grade"] == "A"
        assert dry.score_data["lamp"] == "HARD CLEAR"
        assert dry.score_data["hit_meta"] == {"bp": 12}
        assert dry.score_meta == {}

    def test_fullcombo_clear_maps_to_full_combo(self, catalog):
        res = MerIIDXConverter(catalog).convert(mer(clear_type="FULLCOMBO CLEAR"), CONTEXT)
        assert res.dry_score.score_data["lamp"] == "FULL COMBO"

    def test_unknown_miss_count_nulls_bp(self, catalog):
        res = MerIIDXConverter(catalog).convert(mer(miss_count=-1), CONTEXT)
        assert res.dry_score.score_data["hit_meta"]["bp"] is None

    def test_zero_miss_count_is_kept(self, catalog):
        res = MerIIDXConverter(catalog).convert(mer(miss_count=0), CONTEXT)
        assert res.dry_score.score_data["hit_meta"]["bp"] == 0

    def test_ignores_context_version(self, catalog):
        res = MerIIDXConverter(catalog).convert(mer(), ImportContext(version="99"))
        assert res.chart == CHART_511_SPA

    @pytest.mark.parametrize("changes", [
        {"score": -1},
        {"score": "lots"},
        {"miss_count": -2},
        {"music_id": 0},
        {"update_time": "yesterday"},
        {"update_time": None},
        {"score": 2000},
    ])
    def test_out_of_domain_is_invalid(self, catalog, changes):
        assert _fail(catalog, mer(**changes)).kind is FailureKind.INVALID_SCORE

    @pytest.mark.parametrize("changes", [
        {"play_type": "TRIPLE"},
        {"diff_type": "EXTRA"},
        {"diff_type": ["ANOTHER"]},
        {"clear_type": "PERFECT"},
    ])
    def test_unhandled_source_values_are_internal(self, catalog, changes):
        assert _fail(catalog, mer(**changes)).kind is FailureKind.INTERNAL

    def test_unknown_music_id_is_not_found(self, catalog):
        failure = _fail(catalog, mer(music_id=4242))
        assert failure.kind is FailureKind.NOT_FOUND
        assert failure.message == "Could not find chart for music_id 4242 (SP ANOTHER)"
