"""Unit tests for score_etl.score_utils."""

import dataclasses

import pytest

from sample_data import CHART_511_SPA
from score_etl.failures import ConversionFailure, FailureKind
from score_etl.score_utils import get_grade_and_percent, iidx_max_score

MAX = iidx_max_score(CHART_511_SPA)  # 1572


class TestGradeAndPercent:
    def test_low_score_is_f(self):
        percent, grade = get_grade_and_percent("iidx", 68, CHART_511_SPA)
        assert percent == pytest.approx(4.325699745547074)
        assert grade == "F"

    def test_max(self):
        assert get_grade_and_percent("iidx", MAX, CHART_511_SPA) == (100.0, "MAX")

    def test_zero(self):
        assert get_grade_and_percent("iidx", 0, CHART_511_SPA) == (0.0, "F")

    @pytest.mark.parametrize("eighteenths,grade", [
        (4, "E"),
        (6, "D"),
        (8, "C"),
        (10, "B"),
        (12, "A"),
        (14, "AA"),
        (16, "AAA"),
        (17, "MAX-"),
    ])
    def test_boundaries_are_inclusive(self, eighteenths, grade):
        # lowest score on the boundary (ceil division)
        score = -(-MAX * eighteenths // 18)
        assert get_grade_and_percent("iidx", score, CHART_511_SPA)[1] == grade
        assert get_grade_and_percent("iidx", score - 1, CHART_511_SPA)[1] != grade

    def test_above_max_is_invalid_not_clamped(self):
        with pytest.raises(ConversionFailure) as exc_info:
            get_grade_and_percent("iidx", MAX + 1, CHART_511_SPA)
        assert exc_info.value.kind is FailureKind.INVALID_SCORE
        assert "Invalid percent" in exc_info.value.message

    def test_negative_is_invalid(self):
        with pytest.raises(ConversionFailure) as exc_info:
            get_grade_and_percent("iidx", -1, CHART_511_SPA)
        assert exc_info.value.kind is FailureKind.INVALID_SCORE

    def test_zero_notecount_is_internal(self):
        chart = dataclasses.replace(CHART_511_SPA, notecount=0)
        with pytest.raises(ConversionFailure) as exc_info:
            get_grade_and_percent("iidx", 0, chart)
        assert exc_info.value.kind is FailureKind.INTERNAL

    def test_unknown_game_is_internal(self):
        with pytest.raises(ConversionFailure) as exc_info:
            get_grade_and_percent("sdvx", 0, CHART_511_SPA)
        assert exc_info.value.kind is FailureKind.INTERNAL
