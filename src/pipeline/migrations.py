"""Startup migration and audit helpers for the tables the pipeline writes."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import psycopg2

from settings import get_conn_str

log = logging.getLogger("pipeline.migrations")

STARTUP_DDL = (
    """
    CREATE TABLE IF NOT EXISTS user_correlations (
        id                  SERIAL PRIMARY KEY,
        user_id             TEXT NOT NULL,
        factor_a            TEXT NOT NULL,
        factor_b            TEXT NOT NULL,
        direction           TEXT NOT NULL,
        confidence          DOUBLE PRECISION NOT NULL,
        effect_size_pct     DOUBLE PRECISION NOT NULL,
        occurrences         INTEGER NOT NULL,
        total_opportunities INTEGER NOT NULL,
        lag_days            INTEGER NOT NULL DEFAULT 0,
        computed_at         TIMESTAMP NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_user_correlations_user
    ON user_correlations(user_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS interpreted_insights (
        id                        SERIAL PRIMARY KEY,
        user_id                   TEXT NOT NULL,
        date                      DATE NOT NULL,
        raw_insight_json          JSONB,
        home_narrative            TEXT,
        weekly_story              TEXT,
        forecast                  TEXT,
        insight_nudge_title       TEXT,
        insight_nudge_body        TEXT,
        correlation_insights_json JSONB,
        helps_hurts_json          JSONB,
        symptom_guidance_json     JSONB,
        contradictions_json       JSONB,
        model_used                TEXT,
        input_tokens              INTEGER DEFAULT 0,
        output_tokens             INTEGER DEFAULT 0,
        latency_ms                INTEGER DEFAULT 0,
        pipeline_version          INTEGER DEFAULT 1,
        status                    TEXT NOT NULL DEFAULT 'complete',
        computed_at               TIMESTAMP NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS narratives (
        id      SERIAL PRIMARY KEY,
        user_id TEXT NOT NULL,
        date    DATE NOT NULL,
        type    TEXT NOT NULL,
        text    TEXT
    )
    """,
    """
    ALTER TABLE IF EXISTS computed_scores
    ADD COLUMN IF NOT EXISTS recommendation TEXT
    """,
)

REQUIRED_TABLES: List[str] = [
    "daily_logs",
    "medications",
    "med_logs",
    "profiles",
    "computed_scores",
    "bleeding_events",
    "user_correlations",
    "interpreted_insights",
    "narratives",
]

REQUIRED_COLUMNS = {
    "user_correlations": ["user_id", "factor_a", "factor_b", "lag_days"],
    "interpreted_insights": ["user_id", "date", "status", "model_used", "pipeline_version"],
    "computed_scores": ["user_id", "date", "readiness", "recommendation"],
}


def ensure_startup_schema(conn_str: Optional[str] = None) -> None:
    """Run idempotent startup migrations before pipeline execution."""
    cs = conn_str or get_conn_str()
    if not cs:
        raise RuntimeError("POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured")

    conn = psycopg2.connect(cs)
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            for statement in STARTUP_DDL:
                cur.execute(statement)
    finally:
        conn.close()

    log.info("Startup migrations completed.")


def schema_audit(conn_str: Optional[str] = None) -> Dict[str, Any]:
    """Report required tables and columns missing from the public schema."""
    cs = conn_str or get_conn_str()
    if not cs:
        return {
            "ok": False,
            "error": "POSTGRES_CONNECTION_STRING (or DATABASE_URL) is not configured",
            "missing_tables": [],
            "missing_columns": {},
        }

    conn = psycopg2.connect(cs)
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT table_name, column_name
                FROM information_schema.columns
                WHERE table_schema = 'public' AND table_name = ANY(%s)
                """,
                (REQUIRED_TABLES,),
            )
            rows = cur.fetchall()
    finally:
        conn.close()

    present: Dict[str, set] = {}
    for table, column in rows:
        present.setdefault(table, set()).add(column)

    missing_tables = [t for t in REQUIRED_TABLES if t not in present]
    missing_columns = {
        table: [c for c in cols if c not in present[table]]
        for table, cols in REQUIRED_COLUMNS.items()
        if table in present and any(c not in present[table] for c in cols)
    }
    return {
        "ok": not missing_tables and not missing_columns,
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
    }
