"""
Tests for the PostgreSQL store and connection-string resolution.

psycopg2 is mocked; these check SQL shape, transaction use and error
wrapping rather than a live database.
"""
import asyncio
import os
from datetime import date
from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from settings import get_conn_str
from models import CorrelationRecord, StoredInsightRecord
from store import PostgresHealthStore, StoreError

DAY = date(2025, 6, 15)


def _mock_conn(rows=None, rowcount=1):
    conn = MagicMock()
    cur = conn.cursor.return_value.__enter__.return_value
    cur.fetchall.return_value = rows or []
    cur.rowcount = rowcount
    return conn, cur


# ─── get_conn_str ─────────────────────────────────────────────


class TestGetConnStr:

    @patch("settings.load_dotenv")
    def test_normalises_postgres_scheme(self, _):
        with patch.dict(os.environ, {"POSTGRES_CONNECTION_STRING": " postgres://u:p@h/db "}, clear=True):
            assert get_conn_str() == "postgresql://u:p@h/db"

    @patch("settings.load_dotenv")
    def test_falls_back_to_database_url(self, _):
        with patch.dict(os.environ, {"DATABASE_URL": "postgresql://h/db"}, clear=True):
            assert get_conn_str() == "postgresql://h/db"


# ─── Reads ────────────────────────────────────────────────────


class TestReads:

    @patch("store.psycopg2.connect")
    def test_eligible_users(self, mock_connect):
        conn, cur = _mock_conn(rows=[{"user_id": "a"}, {"user_id": "b"}])
        mock_connect.return_value = conn
        ids = asyncio.run(PostgresHealthStore("postgresql://x").list_eligible_user_ids(14))
        assert ids == ["a", "b"]
        sql, params = cur.execute.call_args.args
        assert "COUNT(DISTINCT date) >= %s" in sql
        assert params == (14,)
        conn.close.assert_called_once()

    @patch("store.psycopg2.connect")
    def test_daily_logs_filters(self, mock_connect):
        conn, cur = _mock_conn()
        mock_connect.return_value = conn
        asyncio.run(PostgresHealthStore("postgresql://x").fetch_daily_logs("u1", limit=30, on_date=DAY))
        sql, params = cur.execute.call_args.args
        assert "AND date = %s" in sql
        assert sql.rstrip().endswith("LIMIT %s")
        assert params == ("u1", DAY, 30)

    @patch("store.psycopg2.connect")
    def test_query_errors_are_wrapped(self, mock_connect):
        conn, cur = _mock_conn()
        cur.execute.side_effect = psycopg2.ProgrammingError("relation does not exist")
        mock_connect.return_value = conn
        with pytest.raises(StoreError, match="relation does not exist"):
            asyncio.run(PostgresHealthStore("postgresql://x").fetch_profile("u1"))
        conn.close.assert_called_once()

    def test_missing_connection_string(self):
        store = PostgresHealthStore("postgresql://x")
        store.conn_str = ""
        with pytest.raises(StoreError):
            asyncio.run(store.fetch_profile("u1"))


# ─── Writes ───────────────────────────────────────────────────


class TestWrites:

    @patch("store.psycopg2.connect")
    def test_replace_correlations_in_one_transaction(self, mock_connect):
        conn, cur = _mock_conn()
        mock_connect.return_value = conn
        records = [
            CorrelationRecord("u1", "alcohol", "hot_flashes", "positive", 0.8, 700.0, 16, 20, 2),
            CorrelationRecord("u1", "caffeine", "anxiety", "positive", 0.7, 40.0, 7, 10, 0),
        ]
        asyncio.run(PostgresHealthStore("postgresql://x").replace_correlations("u1", records))

        statements = [c.args[0] for c in cur.execute.call_args_list]
        assert statements[0].startswith("DELETE FROM user_correlations")
        assert sum("INSERT INTO user_correlations" in s for s in statements) == 2
        # one connection, used as a transaction context
        mock_connect.assert_called_once()
        conn.__enter__.assert_called_once()

    @patch("store.psycopg2.connect")
    def test_upsert_insight_conflicts_on_user_and_date(self, mock_connect):
        conn, cur = _mock_conn()
        mock_connect.return_value = conn
        record = StoredInsightRecord(
            user_id="u1", date=DAY, raw_insight_json={}, home_narrative="", weekly_story="",
            forecast="", insight_nudge_title="", insight_nudge_body="",
            correlation_insights_json=[], helps_hurts_json={}, symptom_guidance_json={},
            contradictions_json=[], model_used="fallback", input_tokens=0, output_tokens=0,
            latency_ms=0, status="complete",
        )
        asyncio.run(PostgresHealthStore("postgresql://x").upsert_insight(record))
        sql, params = cur.execute.call_args.args
        assert "ON CONFLICT (user_id, date) DO UPDATE" in sql
        assert "user_id = EXCLUDED.user_id" not in sql
        assert params[0] == "u1"

    @patch("store.psycopg2.connect")
    def test_score_recommendation_reports_missing_row(self, mock_connect):
        conn, _ = _mock_conn(rowcount=0)
        mock_connect.return_value = conn
        updated = asyncio.run(
            PostgresHealthStore("postgresql://x").set_score_recommendation("u1", DAY, "text")
        )
        assert updated is False
