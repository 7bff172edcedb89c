"""score_etl.shared

Shared utilities used by the import and reconcile modes: RejectWriter,
text report formatting, the JSON run report, and per-record savepoints.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psycopg

from score_etl.normalize import canonical_json


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open JSON-lines writer for rejected raw records."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None

    def write(self, record: Any, reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", encoding="utf-8")
        self._fh.write(canonical_json({"record": record, "_reject_reason": reason}) + "\n")
        self._fh.flush()

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def format_report(title: str, rows: list[tuple[str, Any]], warnings: list[str]) -> str:
    width = max((len(label) for label, _ in rows), default=0) + 2
    lines = ["=" * 60, title, "=" * 60]
    for label, value in rows:
        lines.append(f"  {(label + ':').ljust(width)} {value}")
    if warnings:
        lines.append(f"\nWarnings ({len(warnings)}):")
        for w in warnings[:20]:
            lines.append(f"  {w}")
        if len(warnings) > 20:
            lines.append(f"  ... and {len(warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    counters: dict[str, Any],
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        "counters": counters,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


# ---------------------------------------------------------------------------
# Per-record savepoints
# ---------------------------------------------------------------------------

RecordScope = Callable[[str], AbstractContextManager[Any]]


@contextmanager
def savepoint(conn: psycopg.Connection, name: str) -> Iterator[None]:
    """Wrap one record's writes so a failure rolls back only that record."""
    conn.execute(f"SAVEPOINT {name}")
    try:
        yield
    except Exception:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {name}")


def savepoint_scope(conn: psycopg.Connection) -> RecordScope:
    return lambda name: savepoint(conn, name)


def no_scope(name: str) -> AbstractContextManager[Any]:
    return nullcontext()
