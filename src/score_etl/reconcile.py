"""score_etl.reconcile

Orphan reconciliation: re-run every stored orphan through its converter and
the import commit path once catalog data may have appeared.

Per-orphan outcomes:
  resolves, not blacklisted   commit (dedup hit is fine), remove    -> success
  resolves, blacklisted       remove without committing             -> removed
  still not found             record attempt, keep                  -> still_orphaned
  any other failure           record attempt, keep for inspection   -> failed
  inside backoff window       untouched                             -> deferred
  retry ceiling reached       mark abandoned (kept, not swept)      -> abandoned

One user's orphans are reconciled under that user's reconcile lock, so a
scheduled sweep and an on-demand sweep never re-commit the same orphan
concurrently.  A failure on a single orphan is tallied, never raised.
The lock is renewed after every orphan; if another run has reclaimed it the
user's reconciliation stops with LockLostError and on_finish(False) lets
the caller roll back before the lock is released.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Collection
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from score_etl.catalog import CatalogLookup
from score_etl.failures import (
    ConversionFailure,
    FailureKind,
    ImportConflictError,
    LockLostError,
)
from score_etl.import_lock import ImportLock, held
from score_etl.import_types import get_converter
from score_etl.models import make_canonical_score
from score_etl.normalize import utc_now
from score_etl.orchestrator import commit_score
from score_etl.orphans import OrphanRecord, OrphanStore
from score_etl.scores import NullPersonalBestMerge, PersonalBestMerge, ScoreStore
from score_etl.shared import RecordScope, format_report, no_scope

log = logging.getLogger(__name__)

SUCCESS = "success"
REMOVED = "removed"
STILL_ORPHANED = "still_orphaned"
FAILED = "failed"


@dataclass
class ReconcileCounters:
    processed: int = 0
    success: int = 0
    failed: int = 0
    removed: int = 0
    still_orphaned: int = 0
    deferred: int = 0
    abandoned: int = 0
    warnings: list[str] = field(default_factory=list)

    def merge(self, other: "ReconcileCounters") -> None:
        for name in (
            "processed", "success", "failed", "removed",
            "still_orphaned", "deferred", "abandoned",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.warnings.extend(other.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "success": self.success,
            "failed": self.failed,
            "removed": self.removed,
            "still_orphaned": self.still_orphaned,
            "deferred": self.deferred,
            "abandoned": self.abandoned,
            "warnings": self.warnings[:50],
        }


def build_reconcile_report(counters: ReconcileCounters, dry_run: bool = False) -> str:
    return format_report(
        "Orphan Reconcile Report",
        [
            ("dry_run", dry_run),
            ("processed", counters.processed),
            ("success", counters.success),
            ("removed (blacklist)", counters.removed),
            ("still orphaned", counters.still_orphaned),
            ("failed", counters.failed),
            ("deferred (backoff)", counters.deferred),
            ("abandoned", counters.abandoned),
        ],
        counters.warnings,
    )


def backoff_delay(retry_count: int, base_seconds: float, max_seconds: float | None) -> float:
    """Seconds to wait after the retry_count-th failed attempt."""
    if retry_count <= 0 or base_seconds <= 0:
        return 0.0
    delay = base_seconds * 2 ** (retry_count - 1)
    if max_seconds is not None:
        delay = min(delay, max_seconds)
    return delay


class Reconciler:
    def __init__(
        self,
        catalog: CatalogLookup,
        score_store: ScoreStore,
        orphan_store: OrphanStore,
        lock: ImportLock,
        pb_merge: PersonalBestMerge | None = None,
        max_retries: int | None = None,
        backoff_seconds: float = 0.0,
        backoff_max_seconds: float | None = None,
        record_scope: RecordScope = no_scope,
        on_finish: Callable[[bool], None] | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.catalog = catalog
        self.score_store = score_store
        self.orphan_store = orphan_store
        self.lock = lock
        self.pb_merge = pb_merge or NullPersonalBestMerge()
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.record_scope = record_scope
        self.on_finish = on_finish
        self.log = logger or log
        self.clock = clock

    def reconcile(
        self,
        user_id: str | None = None,
        blacklist: Collection[str] = (),
    ) -> ReconcileCounters:
        """Reconcile one user's orphans, or every user's when user_id is None.

        In the all-users sweep a user whose reconcile lock is held elsewhere
        is skipped with a warning; a single-user call raises
        ImportConflictError instead.
        """
        if user_id is not None:
            return self.reconcile_user(user_id, blacklist)

        total = ReconcileCounters()
        user_ids = sorted({o.user_id for o in self.orphan_store.list()})
        for uid in user_ids:
            try:
                total.merge(self.reconcile_user(uid, blacklist))
            except ImportConflictError as exc:
                self.log.warning("reconcile skipped: %s", exc)
                total.warnings.append(f"skipped user {uid}: {exc}")
        return total

    def reconcile_user(
        self,
        user_id: str,
        blacklist: Collection[str] = (),
    ) -> ReconcileCounters:
        counters = ReconcileCounters()
        run_id = uuid.uuid4().hex
        with held(self.lock, user_id, run_id):
            keep = False
            try:
                orphans = self.orphan_store.list(user_id=user_id)
                self.log.info(
                    "[%s] reconciling %d orphan(s) for user %s", run_id, len(orphans), user_id
                )
                for index, orphan in enumerate(orphans):
                    self._reconcile_one(index, orphan, blacklist, counters)
                    if not self.lock.heartbeat(user_id, run_id):
                        self.log.error(
                            "[%s] reconcile lock for user %s was reclaimed; stopping", run_id, user_id
                        )
                        raise LockLostError(user_id, self.lock.name)
                keep = True
            finally:
                if self.on_finish is not None:
                    self.on_finish(keep)

        self.log.info(
            "[%s] reconcile finished for user %s: processed=%d success=%d removed=%d "
            "still_orphaned=%d failed=%d deferred=%d abandoned=%d",
            run_id, user_id, counters.processed, counters.success, counters.removed,
            counters.still_orphaned, counters.failed, counters.deferred, counters.abandoned,
        )
        return counters

    # -- per orphan -----------------------------------------------------------

    def _reconcile_one(
        self,
        index: int,
        orphan: OrphanRecord,
        blacklist: Collection[str],
        counters: ReconcileCounters,
    ) -> None:
        now = self.clock()
        if self._in_backoff(orphan, now):
            counters.deferred += 1
            return

        counters.processed += 1
        try:
            with self.record_scope(f"orphan_{index}"):
                outcome, error = self._attempt(orphan, blacklist)
        except Exception as exc:
            outcome, error = FAILED, f"{type(exc).__name__}: {exc}"
            self.log.error(
                "orphan %s (user %s): reconcile failed: %s", orphan.orphan_id, orphan.user_id, error
            )

        if outcome == SUCCESS:
            counters.success += 1
        elif outcome == REMOVED:
            counters.removed += 1
        else:
            if outcome == STILL_ORPHANED:
                counters.still_orphaned += 1
            else:
                counters.failed += 1
                counters.warnings.append(f"orphan {orphan.orphan_id}: {error}")
            self._note_attempt(orphan, now, error, counters)

    def _attempt(
        self,
        orphan: OrphanRecord,
        blacklist: Collection[str],
    ) -> tuple[str, str | None]:
        converter = get_converter(orphan.import_type, self.catalog)
        try:
            converted = converter.convert(orphan.raw, orphan.import_context)
        except ConversionFailure as failure:
            if failure.kind is FailureKind.NOT_FOUND:
                self.log.info("orphan %s still unresolved: %s", orphan.orphan_id, failure.message)
                return STILL_ORPHANED, failure.message
            level = logging.ERROR if failure.kind is FailureKind.INTERNAL else logging.INFO
            self.log.log(
                level, "orphan %s failed conversion (%s): %s",
                orphan.orphan_id, failure.kind.value, failure.message,
            )
            return FAILED, failure.message

        score = make_canonical_score(orphan.user_id, converted)
        if score.score_id in blacklist:
            self.orphan_store.remove(orphan.orphan_id)
            self.log.info(
                "orphan %s matches blacklisted score %s; discarded", orphan.orphan_id, score.score_id
            )
            return REMOVED, None

        inserted = commit_score(score, self.score_store, self.pb_merge)
        self.orphan_store.remove(orphan.orphan_id)
        self.log.info(
            "orphan %s resolved as score %s%s",
            orphan.orphan_id, score.score_id, "" if inserted else " (already committed)",
        )
        return SUCCESS, None

    def _in_backoff(self, orphan: OrphanRecord, now: datetime) -> bool:
        if orphan.last_attempt_at is None:
            return False
        delay = backoff_delay(orphan.retry_count, self.backoff_seconds, self.backoff_max_seconds)
        return now < orphan.last_attempt_at + timedelta(seconds=delay)

    def _note_attempt(
        self,
        orphan: OrphanRecord,
        now: datetime,
        error: str | None,
        counters: ReconcileCounters,
    ) -> None:
        retries = self.orphan_store.record_attempt(orphan.orphan_id, now, error)
        if self.max_retries is not None and retries >= self.max_retries:
            self.orphan_store.mark_abandoned(orphan.orphan_id)
            counters.abandoned += 1
            self.log.warning(
                "orphan %s (user %s) abandoned after %d attempt(s): %s",
                orphan.orphan_id, orphan.user_id, retries, error,
            )
