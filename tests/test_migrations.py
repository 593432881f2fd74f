"""Tests for startup migrations and the schema audit (psycopg2 mocked)."""
from unittest.mock import MagicMock, patch

import pytest

from pipeline.migrations import (
    REQUIRED_COLUMNS,
    REQUIRED_TABLES,
    STARTUP_DDL,
    ensure_startup_schema,
    schema_audit,
)
from run_insights import main


def _conn():
    conn = MagicMock()
    cur = conn.cursor.return_value.__enter__.return_value
    return conn, cur


class TestEnsureStartupSchema:

    @patch("pipeline.migrations.psycopg2.connect")
    def test_runs_every_statement(self, mock_connect):
        conn, cur = _conn()
        mock_connect.return_value = conn
        ensure_startup_schema("postgresql://x")
        assert cur.execute.call_count == len(STARTUP_DDL)
        executed = " ".join(c.args[0] for c in cur.execute.call_args_list)
        assert "UNIQUE (user_id, date)" in executed
        assert conn.autocommit is True
        conn.close.assert_called_once()

    @patch("pipeline.migrations.get_conn_str", return_value="")
    def test_requires_connection_string(self, _):
        with pytest.raises(RuntimeError):
            ensure_startup_schema()


class TestSchemaAudit:

    @patch("pipeline.migrations.get_conn_str", return_value="")
    def test_not_configured(self, _):
        out = schema_audit()
        assert out["ok"] is False
        assert "error" in out

    @patch("pipeline.migrations.psycopg2.connect")
    def test_reports_missing_table_and_column(self, mock_connect):
        conn, cur = _conn()
        mock_connect.return_value = conn
        rows = [(t, c) for t, cols in REQUIRED_COLUMNS.items() for c in cols]
        rows = [r for r in rows if r != ("computed_scores", "recommendation")]
        rows += [(t, "user_id") for t in REQUIRED_TABLES if t not in REQUIRED_COLUMNS and t != "narratives"]
        cur.fetchall.return_value = rows

        out = schema_audit("postgresql://x")

        assert out["ok"] is False
        assert out["missing_tables"] == ["narratives"]
        assert out["missing_columns"] == {"computed_scores": ["recommendation"]}
        assert cur.execute.call_args.args[1] == (REQUIRED_TABLES,)
        conn.close.assert_called_once()

    @patch("pipeline.migrations.psycopg2.connect")
    def test_complete_schema_is_ok(self, mock_connect):
        conn, cur = _conn()
        mock_connect.return_value = conn
        rows = [(t, c) for t, cols in REQUIRED_COLUMNS.items() for c in cols]
        rows += [(t, "user_id") for t in REQUIRED_TABLES]
        cur.fetchall.return_value = rows

        out = schema_audit("postgresql://x")

        assert out == {"ok": True, "missing_tables": [], "missing_columns": {}}


class TestMigrateFlag:

    @patch("run_insights.asyncio.run")
    @patch("run_insights.schema_audit")
    @patch("run_insights.ensure_startup_schema")
    def test_migrate_runs_schema_then_audit(self, mock_ensure, mock_audit, mock_run):
        mock_audit.return_value = {"ok": False, "missing_tables": ["narratives"], "missing_columns": {}}
        mock_run.side_effect = lambda coro: coro.close()
        assert main(["--migrate", "--insights"]) == 0
        mock_ensure.assert_called_once()
        mock_audit.assert_called_once()
