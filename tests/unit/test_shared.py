"""Unit tests for score_etl.shared."""

from __future__ import annotations

import json

import pytest

from score_etl.shared import (
    RejectWriter,
    format_report,
    no_scope,
    savepoint,
    savepoint_scope,
    write_run_report,
)


class FakeConn:
    """Records executed SQL in place of a psycopg connection."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def execute(self, sql: str, params=None):
        self.statements.append(sql)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class TestRejectWriter:
    def test_no_file_until_first_write(self, tmp_path):
        path = tmp_path / "out" / "rejects.jsonl"
        writer = RejectWriter(path)
        writer.close()
        assert not path.exists()

    def test_writes_json_lines(self, tmp_path):
        path = tmp_path / "out" / "rejects.jsonl"
        writer = RejectWriter(path)
        writer.write({"chart": "spx"}, "internal:bad difficulty")
        writer.write([1, 2], "invalid_score:negative")
        writer.close()

        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert lines == [
            {"record": {"chart": "spx"}, "_reject_reason": "internal:bad difficulty"},
            {"record": [1, 2], "_reject_reason": "invalid_score:negative"},
        ]


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class TestReports:
    def test_format_report_rows(self):
        text = format_report("Title", [("committed", 3), ("orphaned", 1)], [])
        assert text.splitlines()[1] == "Title"
        assert "  committed:  3" in text
        assert "Warnings" not in text

    def test_format_report_truncates_warnings(self):
        text = format_report("Title", [], [f"w{i}" for i in range(25)])
        assert "Warnings (25):" in text
        assert "w19" in text
        assert "w20" not in text
        assert "... and 5 more" in text

    def test_write_run_report(self, tmp_path):
        path = write_run_report(
            "run-1", "2024-01-01T00:00:00+00:00", "import", False,
            {"committed": 2}, report_dir=tmp_path / "reports",
        )
        assert path == tmp_path / "reports" / "run-1.json"
        report = json.loads(path.read_text())
        assert report["run_id"] == "run-1"
        assert report["mode"] == "import"
        assert report["dry_run"] is False
        assert report["counters"] == {"committed": 2}
        assert report["finished_at"]


# ---------------------------------------------------------------------------
# Savepoints
# ---------------------------------------------------------------------------

class TestSavepoint:
    def test_success_releases(self):
        conn = FakeConn()
        with savepoint(conn, "record_0"):
            conn.execute("INSERT")
        assert conn.statements == ["SAVEPOINT record_0", "INSERT", "RELEASE SAVEPOINT record_0"]

    def test_failure_rolls_back_and_reraises(self):
        conn = FakeConn()
        with pytest.raises(RuntimeError):
            with savepoint(conn, "record_1"):
                raise RuntimeError("boom")
        assert conn.statements == ["SAVEPOINT record_1", "ROLLBACK TO SAVEPOINT record_1"]

    def test_scope_factory(self):
        conn = FakeConn()
        scope = savepoint_scope(conn)
        with scope("record_7"):
            pass
        assert conn.statements[0] == "SAVEPOINT record_7"

    def test_no_scope(self):
        with no_scope("record_0"):
            pass
