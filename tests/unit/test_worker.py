"""Unit tests for score_etl.worker."""

from __future__ import annotations

import threading

import pytest

from sample_data import fervidex
from score_etl.import_lock import InMemoryImportLock
from score_etl.models import ImportContext
from score_etl.orchestrator import ImportOrchestrator
from score_etl.orphans import InMemoryOrphanStore
from score_etl.scores import InMemoryScoreStore
from score_etl.worker import DONE, FAILED, QUEUED, RUNNING, ImportWorker

CONTEXT = ImportContext(version="27", time_received=10)


@pytest.fixture
def shared_stores():
    return InMemoryScoreStore(), InMemoryOrphanStore(), InMemoryImportLock(600)


@pytest.fixture
def worker(catalog, shared_stores):
    score_store, orphan_store, lock = shared_stores

    def factory() -> ImportOrchestrator:
        return ImportOrchestrator(catalog, score_store, orphan_store, lock)

    with ImportWorker(factory, max_workers=2) as w:
        yield w


class TestImportWorker:
    def test_run_to_done(self, worker):
        import_id = worker.submit("u1", "ir/fervidex", [fervidex(), fervidex(entry_id=1)], CONTEXT)
        status = worker.wait(import_id, timeout=5)

        assert status.state == DONE
        assert status.error is None
        assert status.summary.import_id == import_id
        assert status.summary.committed == 1
        assert status.summary.orphaned == 1
        assert status.to_dict()["summary"]["committed"] == 1

    def test_poll_reports_running(self, worker):
        started = threading.Event()
        release = threading.Event()

        def slow_source():
            started.set()
            release.wait(5)
            yield fervidex()

        import_id = worker.submit("u1", "ir/fervidex", slow_source(), CONTEXT)
        assert worker.poll(import_id).state in (QUEUED, RUNNING)
        assert started.wait(5)
        assert worker.poll(import_id).state == RUNNING
        release.set()
        assert worker.wait(import_id, timeout=5).state == DONE

    def test_conflict_is_failed_status(self, worker, shared_stores):
        _, _, lock = shared_stores
        lock.acquire("u1", "another-run")

        import_id = worker.submit("u1", "ir/fervidex", [fervidex()], CONTEXT)
        status = worker.wait(import_id, timeout=5)

        assert status.state == FAILED
        assert status.summary is None
        assert "already in progress" in status.error

    def test_fatal_keeps_partial_summary(self, worker):
        def broken_source():
            yield fervidex()
            raise ValueError("stream closed")

        import_id = worker.submit("u1", "ir/fervidex", broken_source(), CONTEXT)
        status = worker.wait(import_id, timeout=5)

        assert status.state == FAILED
        assert status.summary.committed == 1
        assert "stream closed" in status.error

    def test_parallel_users(self, worker):
        ids = [
            worker.submit(user, "ir/fervidex", [fervidex()], CONTEXT)
            for user in ("u1", "u2", "u3")
        ]
        states = [worker.wait(i, timeout=5).state for i in ids]
        assert states == [DONE, DONE, DONE]

    def test_unknown_id(self, worker):
        with pytest.raises(KeyError):
            worker.poll("no-such-import")

    def test_poll_returns_snapshot(self, worker):
        import_id = worker.submit("u1", "ir/fervidex", [fervidex()], CONTEXT)
        worker.wait(import_id, timeout=5)
        snapshot = worker.poll(import_id)
        snapshot.state = "tampered"
        assert worker.poll(import_id).state == DONE

    def test_wait_after_finish_returns_status(self, worker):
        import_id = worker.submit("u1", "ir/fervidex", [fervidex()], CONTEXT)
        worker.wait(import_id, timeout=5)
        assert worker.wait(import_id, timeout=5).state == DONE

    def test_finished_history_is_bounded(self, catalog, shared_stores):
        score_store, orphan_store, lock = shared_stores

        def factory() -> ImportOrchestrator:
            return ImportOrchestrator(catalog, score_store, orphan_store, lock)

        with ImportWorker(factory, max_workers=1, max_history=1) as w:
            first = w.submit("u1", "ir/fervidex", [fervidex()], CONTEXT)
            assert w.wait(first, timeout=5).state == DONE
            second = w.submit("u2", "ir/fervidex", [fervidex()], CONTEXT)
            assert w.wait(second, timeout=5).state == DONE

            with pytest.raises(KeyError):
                w.poll(first)
            with pytest.raises(KeyError):
                w.wait(first)
            assert w.poll(second).summary.committed == 1

    def test_history_must_be_positive(self):
        with pytest.raises(ValueError):
            ImportWorker(lambda: None, max_history=0)
