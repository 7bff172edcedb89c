"""score_etl.worker

Background dispatch for import runs: one job per ImportRun on a thread pool,
with pollable status.

    worker = ImportWorker(make_orchestrator, max_workers=4)
    import_id = worker.submit("user-1", "ir/fervidex", records, ImportContext(...))
    worker.poll(import_id).state   # queued -> running -> done | failed

Records within one run are still processed sequentially by the orchestrator;
only independent runs execute in parallel.  A run cannot be cancelled once
started.

A finished run drops its future and its status stays pollable until
max_history newer runs have finished; older statuses are evicted.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any

from score_etl.failures import ImportFatalError
from score_etl.models import ImportContext
from score_etl.orchestrator import ImportOrchestrator, ImportSummary

log = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
DONE = "done"
FAILED = "failed"


@dataclass
class ImportStatus:
    import_id: str
    state: str = QUEUED
    summary: ImportSummary | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "import_id": self.import_id,
            "state": self.state,
            "summary": self.summary.to_dict() if self.summary else None,
            "error": self.error,
        }


class ImportWorker:
    def __init__(
        self,
        orchestrator_factory: Callable[[], ImportOrchestrator],
        max_workers: int = 4,
        max_history: int = 1000,
    ) -> None:
        if max_history < 1:
            raise ValueError("max_history must be >= 1")
        self._factory = orchestrator_factory
        self._max_history = max_history
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="score-import"
        )
        self._mutex = threading.Lock()
        self._jobs: dict[str, ImportStatus] = {}
        self._futures: dict[str, Future] = {}
        self._finished: deque[str] = deque()

    def submit(
        self,
        user_id: str,
        import_type: str,
        source: Iterable[Any],
        context: ImportContext,
    ) -> str:
        """Queue one import run and return its import_id."""
        import_id = uuid.uuid4().hex
        with self._mutex:
            self._jobs[import_id] = ImportStatus(import_id)
            self._futures[import_id] = self._executor.submit(
                self._run, import_id, user_id, import_type, source, context
            )
        log.info("[%s] queued import for user %s (%s)", import_id, user_id, import_type)
        return import_id

    def poll(self, import_id: str) -> ImportStatus:
        """Return a snapshot of the run's status.  Unknown ids raise KeyError."""
        with self._mutex:
            return replace(self._jobs[import_id])

    def wait(self, import_id: str, timeout: float | None = None) -> ImportStatus:
        with self._mutex:
            future = self._futures.get(import_id)
        if future is not None:
            future.result(timeout=timeout)
        return self.poll(import_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ImportWorker":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    def _update(self, import_id: str, **changes: Any) -> None:
        with self._mutex:
            self._jobs[import_id] = replace(self._jobs[import_id], **changes)

    def _retire(self, import_id: str) -> None:
        with self._mutex:
            self._futures.pop(import_id, None)
            self._finished.append(import_id)
            while len(self._finished) > self._max_history:
                self._jobs.pop(self._finished.popleft(), None)

    def _run(
        self,
        import_id: str,
        user_id: str,
        import_type: str,
        source: Iterable[Any],
        context: ImportContext,
    ) -> None:
        self._update(import_id, state=RUNNING)
        try:
            orchestrator = self._factory()
            summary = orchestrator.run(user_id, import_type, source, context, import_id=import_id)
        except ImportFatalError as exc:
            log.error("[%s] import failed: %s", import_id, exc)
            self._update(import_id, state=FAILED, summary=exc.summary, error=str(exc))
        except Exception as exc:
            log.error("[%s] import failed: %s", import_id, exc, exc_info=True)
            self._update(import_id, state=FAILED, error=f"{type(exc).__name__}: {exc}")
        else:
            self._update(import_id, state=DONE, summary=summary)
        finally:
            self._retire(import_id)
