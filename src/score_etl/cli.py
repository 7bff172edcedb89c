"""score_etl.cli

Command-line entry point (`score-etl`).

Modes:
  import        convert and commit one user's records from a JSON array file
  reconcile     re-attempt stored orphans (one user, or every user)
  list_orphans  print stored orphans for operator triage
  sweep_locks   delete import/reconcile locks whose heartbeat expired

Every run prints a text report and writes ./artifacts/reports/<run_id>.json.
Lock rows are written on a separate autocommit connection so they are
visible to other processes immediately; score and orphan writes share one
transaction that is committed at the end (rolled back on --dry-run).
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import click
import psycopg

from score_etl.catalog import PostgresCatalog
from score_etl.config import (
    VALID_LOG_LEVELS,
    ConfigValidationError,
    PipelineConfig,
    load_pipeline_config,
)
from score_etl.failures import ImportConflictError, ImportFatalError
from score_etl.import_lock import (
    IMPORT_LOCK_TABLE,
    RECONCILE_LOCK_TABLE,
    PostgresImportLock,
)
from score_etl.import_types import CONVERTERS
from score_etl.models import ImportContext
from score_etl.normalize import utc_now
from score_etl.orchestrator import ImportOrchestrator, ImportSummary, build_import_report
from score_etl.orphans import PostgresOrphanStore
from score_etl.reconcile import Reconciler, build_reconcile_report
from score_etl.scores import PostgresScoreStore, load_blacklist
from score_etl.shared import RejectWriter, format_report, savepoint_scope, write_run_report

log = logging.getLogger(__name__)

MODES = ["import", "reconcile", "list_orphans", "sweep_locks"]


# ---------------------------------------------------------------------------
# Flag validation / input loading
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _validate_import_flags(
    user_id: str | None,
    import_type: str | None,
    input_path: str | None,
    run_id: str,
) -> None:
    missing = [
        flag for flag, value in (
            ("--user-id", user_id),
            ("--import-type", import_type),
            ("--input-path", input_path),
        )
        if not value
    ]
    if missing:
        _fatal(run_id, f"--mode import requires {', '.join(missing)}")


def _load_records(input_path: str, run_id: str) -> list[Any]:
    try:
        data = json.loads(Path(input_path).read_text(encoding="utf-8"))
    except OSError as exc:
        _fatal(run_id, f"cannot read {input_path}: {exc}")
    except json.JSONDecodeError as exc:
        _fatal(run_id, f"{input_path} is not valid JSON: {exc}")
    if not isinstance(data, list):
        _fatal(run_id, f"{input_path} must contain a JSON array of records")
    return data


def _iter_records(records: list[Any]):
    yield from records


def _finisher(conn: psycopg.Connection, dry_run: bool):
    """Commit (or roll back on dry run or a lost lock) while the lock is held."""
    def finish(keep: bool) -> None:
        if keep and not dry_run:
            conn.commit()
        else:
            conn.rollback()
    return finish


def _outcome(run_id: str, dry_run: bool, lock_lost: bool = False) -> None:
    if dry_run:
        click.echo(f"[{run_id}] DRY RUN: rolled back.")
    elif lock_lost:
        click.echo(f"[{run_id}] Lock lost: rolled back.")
    else:
        click.echo(f"[{run_id}] Committed.")


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run_import(
    db_dsn: str,
    cfg: PipelineConfig,
    run_id: str,
    user_id: str,
    import_type: str,
    records: list[Any],
    context: ImportContext,
    rejects: RejectWriter | None,
    dry_run: bool,
) -> tuple[ImportSummary, int]:
    lock_conn = psycopg.connect(db_dsn, autocommit=True)
    conn = psycopg.connect(db_dsn, autocommit=False)
    exit_code = 0
    try:
        lock = PostgresImportLock(lock_conn, cfg.lock_ttl_seconds, table=IMPORT_LOCK_TABLE)
        lock.sweep_stale()
        orchestrator = ImportOrchestrator(
            catalog=PostgresCatalog(conn),
            score_store=PostgresScoreStore(conn),
            orphan_store=PostgresOrphanStore(conn),
            lock=lock,
            blacklist=load_blacklist(conn, user_id),
            rejects=rejects,
            record_scope=savepoint_scope(conn),
            heartbeat_every=cfg.heartbeat_every,
            on_finish=_finisher(conn, dry_run),
        )
        try:
            summary = orchestrator.run(
                user_id, import_type, _iter_records(records), context, import_id=run_id
            )
        except ImportConflictError as exc:
            conn.rollback()
            _fatal(run_id, str(exc))
        except ImportFatalError as exc:
            summary = exc.summary
            exit_code = 1
            click.echo(f"[{run_id}] import aborted: {exc}", err=True)

        click.echo(build_import_report(summary, dry_run=dry_run))
        # Records before an aborted one were fully processed and are kept.
        _outcome(run_id, dry_run, summary.lock_lost)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
        lock_conn.close()
    return summary, exit_code


def _run_reconcile(
    db_dsn: str,
    cfg: PipelineConfig,
    run_id: str,
    user_id: str | None,
    dry_run: bool,
) -> dict[str, Any]:
    lock_conn = psycopg.connect(db_dsn, autocommit=True)
    conn = psycopg.connect(db_dsn, autocommit=False)
    try:
        lock = PostgresImportLock(lock_conn, cfg.lock_ttl_seconds, table=RECONCILE_LOCK_TABLE)
        lock.sweep_stale()
        reconciler = Reconciler(
            catalog=PostgresCatalog(conn),
            score_store=PostgresScoreStore(conn),
            orphan_store=PostgresOrphanStore(conn),
            lock=lock,
            max_retries=cfg.orphan_max_retries,
            backoff_seconds=cfg.orphan_backoff_seconds,
            backoff_max_seconds=cfg.orphan_backoff_max_seconds,
            record_scope=savepoint_scope(conn),
            on_finish=_finisher(conn, dry_run),
        )
        try:
            counters = reconciler.reconcile(user_id, load_blacklist(conn, user_id))
        except ImportConflictError as exc:
            conn.rollback()
            _fatal(run_id, str(exc))

        click.echo(build_reconcile_report(counters, dry_run=dry_run))
        _outcome(run_id, dry_run)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
        lock_conn.close()
    return counters.to_dict()


def _run_list_orphans(db_dsn: str, user_id: str | None, include_abandoned: bool) -> dict[str, Any]:
    with psycopg.connect(db_dsn) as conn:
        orphans = PostgresOrphanStore(conn).list(user_id, include_abandoned=include_abandoned)
    for o in orphans:
        flag = " ABANDONED" if o.abandoned else ""
        click.echo(
            f"{o.orphan_id[:16]}  user={o.user_id}  type={o.import_type}  "
            f"first_seen={o.first_seen_at.isoformat()}  retries={o.retry_count}{flag}  "
            f"last_error={o.last_error or ''}"
        )
    click.echo(format_report(
        "Orphan Listing",
        [
            ("user", user_id or "(all)"),
            ("orphans", len(orphans)),
            ("abandoned", sum(1 for o in orphans if o.abandoned)),
        ],
        [],
    ))
    return {
        "orphans": len(orphans),
        "abandoned": sum(1 for o in orphans if o.abandoned),
        "orphan_ids": [o.orphan_id for o in orphans],
    }


def _run_sweep_locks(db_dsn: str, cfg: PipelineConfig) -> dict[str, Any]:
    with psycopg.connect(db_dsn, autocommit=True) as conn:
        swept = {
            table: PostgresImportLock(conn, cfg.lock_ttl_seconds, table=table).sweep_stale()
            for table in (IMPORT_LOCK_TABLE, RECONCILE_LOCK_TABLE)
        }
    click.echo(format_report("Stale Lock Sweep", list(swept.items()), []))
    return swept


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

@click.command()
@click.option("--mode", required=True, type=click.Choice(MODES), help="Pipeline mode to run")
@click.option("--db-dsn", required=True, help="PostgreSQL DSN")
@click.option("--config", "config_path", default=None, type=click.Path(), help="Pipeline YAML config")
@click.option("--user-id", default=None, help="[import] owning user; [reconcile|list_orphans] scope to one user")
@click.option("--import-type", default=None, type=click.Choice(sorted(CONVERTERS)), help="[import] source format")
@click.option("--input-path", default=None, type=click.Path(), help="[import] JSON array of raw records")
@click.option("--game-version", default=None, help="[import] game version reported by the source")
@click.option("--time-received", default=None, type=int, help="[import] epoch ms the payload was received (default: now)")
@click.option("--include-abandoned", is_flag=True, default=False, help="[list_orphans] include abandoned orphans")
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--rejects-path", default=None, type=click.Path(), help="[import] JSON-lines file for skipped records")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--log-level", default=None, type=click.Choice(VALID_LOG_LEVELS, case_sensitive=False))
@click.option("--report-dir", default="./artifacts/reports", show_default=True, type=click.Path())
def main(
    mode: str,
    db_dsn: str,
    config_path: str | None,
    user_id: str | None,
    import_type: str | None,
    input_path: str | None,
    game_version: str | None,
    time_received: int | None,
    include_abandoned: bool,
    dry_run: bool,
    rejects_path: str | None,
    run_id: str | None,
    log_level: str | None,
    report_dir: str,
) -> None:
    """Score normalization and orphan-retry pipeline."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    try:
        cfg = load_pipeline_config(Path(config_path) if config_path else None)
    except (ConfigValidationError, FileNotFoundError) as exc:
        _fatal(run_id, f"invalid config: {exc}")

    logging.basicConfig(
        level=(log_level or cfg.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")
    if cfg.yaml_hash:
        log.info("[%s] config %s sha256=%s", run_id, config_path, cfg.yaml_hash)

    exit_code = 0
    if mode == "import":
        _validate_import_flags(user_id, import_type, input_path, run_id)
        records = _load_records(input_path, run_id)
        context = ImportContext(
            version=game_version,
            time_received=(
                time_received if time_received is not None
                else int(utc_now().timestamp() * 1000)
            ),
        )
        rejects = RejectWriter(Path(rejects_path)) if rejects_path else None
        try:
            summary, exit_code = _run_import(
                db_dsn, cfg, run_id, user_id, import_type, records, context, rejects, dry_run
            )
        finally:
            if rejects is not None:
                rejects.close()
        counters = summary.to_dict()
    elif mode == "reconcile":
        counters = _run_reconcile(db_dsn, cfg, run_id, user_id, dry_run)
    elif mode == "list_orphans":
        counters = _run_list_orphans(db_dsn, user_id, include_abandoned)
    else:
        counters = _run_sweep_locks(db_dsn, cfg)

    if cfg.yaml_hash:
        counters["config_sha256"] = cfg.yaml_hash
    report_path = write_run_report(
        run_id, started_at, mode, dry_run, counters, report_dir=Path(report_dir)
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if exit_code:
        sys.exit(exit_code)


if __name__ == "__main__":
    main()
