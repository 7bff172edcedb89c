"""Shared unit-test fixtures: a small IIDX catalog and sample raw records."""

from __future__ import annotations

import copy

import pytest

from sample_data import BASE_FERVIDEX_SCORE, BASE_MER_SCORE, CHART_511_SPA, SONG_511
from score_etl.catalog import InMemoryCatalog
from score_etl.models import ImportContext


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog(songs=[SONG_511], charts=[CHART_511_SPA])


@pytest.fixture
def empty_catalog() -> InMemoryCatalog:
    return InMemoryCatalog()


@pytest.fixture
def context() -> ImportContext:
    return ImportContext(version="27", time_received=10)


@pytest.fixture
def fervidex_score() -> dict:
    return copy.deepcopy(BASE_FERVIDEX_SCORE)


@pytest.fixture
def mer_score() -> dict:
    return copy.deepcopy(BASE_MER_SCORE)
