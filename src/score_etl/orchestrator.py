"""score_etl.orchestrator

Drives one import run for one user:

  Idle -> LockAcquired -> Iterating
       -> {Committing | Skipping | Orphaning} per record
       -> Summarizing -> Done | Failed   (lock released on every exit path)

Records are consumed one at a time from a lazy, non-restartable source; the
next record is not pulled until the current one has been committed, skipped
or orphaned.

Per-record dispositions (see failures.disposition_for):
  converted          -> commit (dedup on score_id) + personal-best merge
  InvalidScore       -> skipped_invalid, logged at info
  NotFound           -> orphaned, stored in the orphan store
  Internal           -> skipped_invalid + internal_failures, logged at error

A failure while committing a score, merging personal bests, or storing an
orphan aborts the run with ImportFatalError carrying the partial summary.

The lock is renewed every heartbeat_every records and whenever half its TTL
has passed since the last renewal.  A renewal that finds the lock owned by
another run aborts with lock_lost set; nothing further is written.
on_finish(keep) runs before the lock is released so the caller can commit
(keep=True) or roll back (keep=False, the lock was lost) while still holding
it.
"""

from __future__ import annotations

import enum
import logging
import time
import uuid
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from score_etl.catalog import CatalogLookup
from score_etl.converter import Converter
from score_etl.failures import (
    ConversionFailure,
    Disposition,
    ImportFatalError,
    LockLostError,
    disposition_for,
)
from score_etl.import_lock import ImportLock
from score_etl.import_types import get_converter
from score_etl.models import CanonicalScore, ImportContext, make_canonical_score
from score_etl.normalize import canonical_json, utc_now
from score_etl.orphans import OrphanStore, make_orphan
from score_etl.scores import NullPersonalBestMerge, PersonalBestMerge, ScoreStore
from score_etl.shared import RecordScope, RejectWriter, format_report, no_scope

log = logging.getLogger(__name__)


class ImportState(str, enum.Enum):
    IDLE = "idle"
    LOCK_ACQUIRED = "lock_acquired"
    ITERATING = "iterating"
    COMMITTING = "committing"
    SKIPPING = "skipping"
    ORPHANING = "orphaning"
    SUMMARIZING = "summarizing"
    DONE = "done"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

@dataclass
class ImportSummary:
    import_id: str
    user_id: str
    import_type: str
    state: ImportState = ImportState.IDLE
    attempted: int = 0
    committed: int = 0
    duplicates: int = 0
    blacklisted: int = 0
    skipped_invalid: int = 0
    internal_failures: int = 0
    orphaned: int = 0
    score_ids: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: float = 0.0
    record_timings_ms: list[float] = field(default_factory=list)
    error: str | None = None
    lock_lost: bool = False
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["state"] = self.state.value
        d["warnings"] = self.warnings[:50]
        return d


def build_import_report(summary: ImportSummary, dry_run: bool = False) -> str:
    return format_report(
        f"Score Import Report ({summary.import_type})",
        [
            ("dry_run", dry_run),
            ("import id", summary.import_id),
            ("user", summary.user_id),
            ("state", summary.state.value),
            ("attempted", summary.attempted),
            ("committed", summary.committed),
            ("duplicates", summary.duplicates),
            ("blacklisted", summary.blacklisted),
            ("skipped invalid", summary.skipped_invalid),
            ("  of which internal", summary.internal_failures),
            ("orphaned", summary.orphaned),
            ("lock lost", summary.lock_lost),
            ("duration ms", round(summary.duration_ms, 1)),
        ],
        summary.warnings,
    )


# ---------------------------------------------------------------------------
# Commit path (shared with the reconciler)
# ---------------------------------------------------------------------------

def commit_score(
    score: CanonicalScore,
    score_store: ScoreStore,
    pb_merge: PersonalBestMerge,
) -> bool:
    """Commit score and merge personal bests.  Return False on a dedup hit."""
    inserted = score_store.commit(score)
    if inserted:
        pb_merge.apply(score)
    return inserted


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class ImportOrchestrator:
    def __init__(
        self,
        catalog: CatalogLookup,
        score_store: ScoreStore,
        orphan_store: OrphanStore,
        lock: ImportLock,
        pb_merge: PersonalBestMerge | None = None,
        blacklist: Collection[str] = (),
        rejects: RejectWriter | None = None,
        record_scope: RecordScope = no_scope,
        heartbeat_every: int = 50,
        on_finish: Callable[[bool], None] | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.catalog = catalog
        self.score_store = score_store
        self.orphan_store = orphan_store
        self.lock = lock
        self.pb_merge = pb_merge or NullPersonalBestMerge()
        self.blacklist = blacklist
        self.rejects = rejects
        self.record_scope = record_scope
        self.heartbeat_every = heartbeat_every
        self.on_finish = on_finish
        self.log = logger or log
        self.clock = clock

    def run(
        self,
        user_id: str,
        import_type: str,
        source: Iterable[Any],
        context: ImportContext,
        import_id: str | None = None,
    ) -> ImportSummary:
        """Run one import.

        Raises:
            UnknownImportTypeError: before the lock is taken.
            ImportConflictError: another run holds this user's lock.
            ImportFatalError: the run aborted; .summary holds partial counts and
                .summary.lock_lost is set when another run reclaimed the lock.
        """
        converter = get_converter(import_type, self.catalog)
        summary = ImportSummary(
            import_id=import_id or uuid.uuid4().hex,
            user_id=user_id,
            import_type=import_type,
        )
        summary.started_at = self.clock()
        t_start = time.perf_counter()

        self.lock.acquire(user_id, summary.import_id)
        summary.state = ImportState.LOCK_ACQUIRED
        self.log.info(
            "[%s] import started: user=%s type=%s", summary.import_id, user_id, import_type
        )

        failed = True
        try:
            summary.state = ImportState.ITERATING
            last_beat = self.clock()
            for index, raw in enumerate(source):
                if self._heartbeat_due(index, last_beat):
                    self._renew(summary)
                    last_beat = self.clock()
                with self.record_scope(f"record_{index}"):
                    self._process_record(converter, summary, raw, context)
            # Ownership must still hold when the caller commits.
            self._renew(summary)
            summary.state = ImportState.SUMMARIZING
            failed = False
        except ImportFatalError as exc:
            summary.error = str(exc)
            raise
        except Exception as exc:
            summary.error = f"{type(exc).__name__}: {exc}"
            self.log.error("[%s] import aborted: %s", summary.import_id, summary.error)
            raise ImportFatalError(summary.error, summary) from exc
        finally:
            try:
                if self.on_finish is not None:
                    self.on_finish(not summary.lock_lost)
            except Exception as exc:
                failed = True
                summary.error = f"finishing the run failed: {exc}"
                self.log.error("[%s] %s", summary.import_id, summary.error)
                raise ImportFatalError(summary.error, summary) from exc
            finally:
                self.lock.release(user_id, summary.import_id)
                summary.finished_at = self.clock()
                summary.duration_ms = (time.perf_counter() - t_start) * 1000
                summary.state = ImportState.FAILED if failed else ImportState.DONE

        self.log.info(
            "[%s] import finished: attempted=%d committed=%d duplicates=%d "
            "skipped_invalid=%d orphaned=%d (%.1f ms)",
            summary.import_id, summary.attempted, summary.committed, summary.duplicates,
            summary.skipped_invalid, summary.orphaned, summary.duration_ms,
        )
        return summary

    # -- lock lease -----------------------------------------------------------

    def _heartbeat_due(self, index: int, last_beat: datetime) -> bool:
        if index == 0:
            return False
        if self.heartbeat_every and index % self.heartbeat_every == 0:
            return True
        elapsed = (self.clock() - last_beat).total_seconds()
        return elapsed >= self.lock.ttl_seconds / 2

    def _renew(self, summary: ImportSummary) -> None:
        if not self.lock.heartbeat(summary.user_id, summary.import_id):
            summary.lock_lost = True
            raise LockLostError(summary.user_id, self.lock.name)

    # -- per record -----------------------------------------------------------

    def _process_record(
        self,
        converter: Converter,
        summary: ImportSummary,
        raw: Any,
        context: ImportContext,
    ) -> None:
        t0 = time.perf_counter()
        summary.attempted += 1
        try:
            converted = converter.convert(raw, context)
        except ConversionFailure as failure:
            if failure.raw is None:
                failure.raw = raw
            if failure.context is None:
                failure.context = context
            self._dispose_failure(converter, summary, failure)
        else:
            score = make_canonical_score(summary.user_id, converted)
            self._commit(summary, score)
        summary.record_timings_ms.append((time.perf_counter() - t0) * 1000)
        summary.state = ImportState.ITERATING

    def _commit(self, summary: ImportSummary, score: CanonicalScore) -> None:
        if score.score_id in self.blacklist:
            summary.blacklisted += 1
            self.log.info("[%s] score %s is blacklisted; not committed", summary.import_id, score.score_id)
            return

        summary.state = ImportState.COMMITTING
        try:
            inserted = commit_score(score, self.score_store, self.pb_merge)
        except Exception as exc:
            self.log.error(
                "[%s] commit/personal-best merge failed for score %s: %s",
                summary.import_id, score.score_id, exc,
            )
            summary.error = f"commit failed for score {score.score_id}: {exc}"
            raise ImportFatalError(summary.error, summary) from exc

        if inserted:
            summary.committed += 1
            summary.score_ids.append(score.score_id)
        else:
            summary.duplicates += 1

    def _dispose_failure(
        self,
        converter: Converter,
        summary: ImportSummary,
        failure: ConversionFailure,
    ) -> None:
        record = canonical_json(failure.raw)
        ctx = canonical_json(failure.context.to_dict())
        disposition = disposition_for(failure.kind)

        if disposition is Disposition.SKIP:
            summary.state = ImportState.SKIPPING
            summary.skipped_invalid += 1
            self.log.info(
                "[%s] invalid score skipped: %s | record=%s context=%s",
                summary.import_id, failure.message, record, ctx,
            )
            if self.rejects is not None:
                self.rejects.write(failure.raw, f"invalid_score:{failure.message}")

        elif disposition is Disposition.ORPHAN:
            summary.state = ImportState.ORPHANING
            orphan = make_orphan(
                summary.user_id,
                summary.import_type,
                failure.raw,
                failure.context,
                game=converter.game,
                error=failure.message,
                now=self.clock(),
            )
            try:
                created = self.orphan_store.store(orphan)
            except Exception as exc:
                summary.error = f"orphan store failed: {exc}"
                self.log.error("[%s] %s | record=%s", summary.import_id, summary.error, record)
                raise ImportFatalError(summary.error, summary) from exc
            summary.orphaned += 1
            self.log.info(
                "[%s] orphaned (%s): %s | record=%s context=%s",
                summary.import_id, "new" if created else "already stored",
                failure.message, record, ctx,
            )

        elif disposition is Disposition.SKIP_INTERNAL:
            summary.state = ImportState.SKIPPING
            summary.skipped_invalid += 1
            summary.internal_failures += 1
            summary.warnings.append(f"internal failure: {failure.message}")
            self.log.error(
                "[%s] INTERNAL failure: %s | record=%s context=%s",
                summary.import_id, failure.message, record, ctx,
            )
            if self.rejects is not None:
                self.rejects.write(failure.raw, f"internal:{failure.message}")
