"""Unit tests for the in-memory catalog, score and orphan stores, and the
import-type registry."""

from datetime import datetime, timedelta, timezone

import pytest

from sample_data import CHART_511_SPA, SONG_511, fervidex
from score_etl.catalog import InMemoryCatalog
from score_etl.convert_fervidex import FervidexConverter
from score_etl.convert_mer_iidx import MerIIDXConverter
from score_etl.failures import UnknownImportTypeError
from score_etl.import_types import CONVERTERS, get_converter
from score_etl.models import ImportContext, build_score_id, make_canonical_score
from score_etl.orphans import InMemoryOrphanStore, build_orphan_id, make_orphan
from score_etl.scores import InMemoryScoreStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class TestInMemoryCatalog:
    def test_find_chart_by_version(self, catalog):
        assert catalog.find_chart("iidx", 1000, "SP", "ANOTHER", "28") == CHART_511_SPA

    def test_find_chart_primary_when_no_version(self, catalog):
        assert catalog.find_chart("iidx", 1000, "SP", "ANOTHER", None) == CHART_511_SPA

    def test_find_chart_absent_is_none(self, catalog):
        assert catalog.find_chart("iidx", 1000, "DP", "ANOTHER", "27") is None

    def test_find_song(self, catalog):
        assert catalog.find_song("iidx", 1) == SONG_511
        assert catalog.find_song("iidx", 2) is None

    def test_find_chart_by_hash_absent(self):
        assert InMemoryCatalog().find_chart_by_hash("iidx", "nope") is None


# ---------------------------------------------------------------------------
# Import types
# ---------------------------------------------------------------------------

class TestImportTypes:
    def test_registry(self):
        assert set(CONVERTERS) == {"ir/fervidex", "file/mer-iidx"}

    def test_get_converter(self, catalog):
        assert isinstance(get_converter("ir/fervidex", catalog), FervidexConverter)
        assert isinstance(get_converter("file/mer-iidx", catalog), MerIIDXConverter)

    def test_unknown_import_type(self, catalog):
        with pytest.raises(UnknownImportTypeError):
            get_converter("file/not-a-format", catalog)


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

def _score(catalog, user_id="u1", **changes):
    converted = FervidexConverter(catalog).convert(
        fervidex(**changes), ImportContext(version="27", time_received=10)
    )
    return make_canonical_score(user_id, converted)


class TestScoreIdentity:
    def test_score_id_shape(self, catalog):
        score = _score(catalog)
        assert score.score_id.startswith("R")
        assert len(score.score_id) == 41

    def test_score_id_depends_on_user(self, catalog):
        assert _score(catalog, "u1").score_id != _score(catalog, "u2").score_id

    def test_score_id_depends_on_judgements(self, catalog):
        assert _score(catalog).score_id != _score(catalog, great=1).score_id

    def test_score_id_ignores_non_discriminating_fields(self, catalog):
        assert _score(catalog).score_id == _score(catalog, ghost=[1, 2, 3]).score_id

    def test_build_score_id_matches_canonical(self, catalog):
        converted = FervidexConverter(catalog).convert(
            fervidex(), ImportContext(version="27", time_received=10)
        )
        score = make_canonical_score("u1", converted)
        assert build_score_id("u1", CHART_511_SPA.chart_id, converted.dry_score) == score.score_id


class TestInMemoryScoreStore:
    def test_commit_then_dedup(self, catalog):
        store = InMemoryScoreStore()
        score = _score(catalog)
        assert store.commit(score) is True
        assert store.commit(score) is False
        assert store.exists(score.score_id)
        assert len(store.scores) == 1


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------

def _orphan(user_id="u1", raw=None, now=T0):
    return make_orphan(
        user_id, "ir/fervidex", raw or fervidex(entry_id=1),
        ImportContext(version="27", time_received=10), game="iidx",
        error="Could not find chart", now=now,
    )


class TestOrphanIdentity:
    def test_same_record_same_id(self):
        assert _orphan().orphan_id == _orphan(now=T0 + timedelta(days=1)).orphan_id

    def test_different_user_different_id(self):
        assert _orphan("u1").orphan_id != _orphan("u2").orphan_id

    def test_build_orphan_id_matches(self):
        orphan = _orphan()
        assert orphan.orphan_id == build_orphan_id(
            "u1", "ir/fervidex", orphan.raw, orphan.context
        )

    def test_import_context_round_trip(self):
        assert _orphan().import_context == ImportContext(version="27", time_received=10)


class TestInMemoryOrphanStore:
    def test_store_is_upsert(self):
        store = InMemoryOrphanStore()
        assert store.store(_orphan()) is True
        assert store.store(_orphan()) is False
        assert len(store) == 1

    def test_list_scoped_and_ordered(self):
        store = InMemoryOrphanStore()
        late = _orphan("u1", fervidex(entry_id=2), now=T0 + timedelta(hours=1))
        early = _orphan("u1", fervidex(entry_id=3), now=T0)
        other = _orphan("u2")
        for o in (late, early, other):
            store.store(o)

        assert [o.orphan_id for o in store.list("u1")] == [early.orphan_id, late.orphan_id]
        assert len(store.list()) == 3

    def test_record_attempt_and_abandon(self):
        store = InMemoryOrphanStore()
        orphan = _orphan()
        store.store(orphan)

        assert store.record_attempt(orphan.orphan_id, T0, "still missing") == 1
        assert store.record_attempt(orphan.orphan_id, T0, "still missing") == 2
        store.mark_abandoned(orphan.orphan_id)

        assert store.list() == []
        kept = store.list(include_abandoned=True)
        assert len(kept) == 1
        assert kept[0].retry_count == 2
        assert kept[0].abandoned is True
        assert kept[0].last_error == "still missing"

    def test_record_attempt_on_missing_orphan(self):
        assert InMemoryOrphanStore().record_attempt("nope", T0, None) == 0

    def test_remove(self):
        store = InMemoryOrphanStore()
        orphan = _orphan()
        store.store(orphan)
        assert store.remove(orphan.orphan_id) is True
        assert store.remove(orphan.orphan_id) is False
        assert store.get(orphan.orphan_id) is None

    def test_returns_copies(self):
        store = InMemoryOrphanStore()
        orphan = _orphan()
        store.store(orphan)
        store.get(orphan.orphan_id).retry_count = 99
        assert store.get(orphan.orphan_id).retry_count == 0
