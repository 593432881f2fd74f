"""
Storage collaborator.

``HealthStore`` is the narrow read/write interface the engine and the
insights pipeline depend on.  ``PostgresHealthStore`` implements it on top
of psycopg2; every call opens its own connection and runs in a worker
thread so the pipeline can await it.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import psycopg2
from psycopg2.extras import Json, RealDictCursor

from settings import get_conn_str
from models import CorrelationRecord, StoredInsightRecord

log = logging.getLogger("store")


class StoreError(RuntimeError):
    """Raised when the backing database rejects a read or write."""


class HealthStore(abc.ABC):
    """Read/write surface used by the core.  Rows are plain dicts."""

    # ─── Reads ──────────────────────────────────────────────

    @abc.abstractmethod
    async def list_eligible_user_ids(self, min_log_days: int) -> List[str]:
        """Users with at least ``min_log_days`` distinct log dates."""

    @abc.abstractmethod
    async def fetch_daily_logs(
        self, user_id: str, *, limit: Optional[int] = None, on_date: Optional[date] = None
    ) -> List[Dict[str, Any]]:
        """Log rows, newest date first: date, symptoms, sleep_hours,
        sleep_quality, mood, context_tags, cycle_data."""

    @abc.abstractmethod
    async def fetch_med_logs(
        self, user_id: str, *, since: Optional[date] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Intake rows, newest first: medication_id, medication_name, date, taken."""

    @abc.abstractmethod
    async def fetch_active_medications(self, user_id: str) -> List[Dict[str, Any]]:
        """Active medications: id, name, dose, time."""

    @abc.abstractmethod
    async def fetch_profile(self, user_id: str) -> Optional[Dict[str, Any]]:
        """stage, symptoms, goals, date_of_birth (or None)."""

    @abc.abstractmethod
    async def fetch_top_correlations(self, user_id: str, limit: int = 15) -> List[Dict[str, Any]]:
        """Correlation rows ordered by |effect_size_pct| descending."""

    @abc.abstractmethod
    async def fetch_recent_scores(self, user_id: str, limit: int = 7) -> List[Dict[str, Any]]:
        """Score rows newest first: date, readiness, sleep_score, symptom_load."""

    @abc.abstractmethod
    async def fetch_score(self, user_id: str, on_date: date) -> Optional[Dict[str, Any]]:
        """The score row for one date, if any."""

    @abc.abstractmethod
    async def fetch_bleeding_events(
        self, user_id: str, *, since: date, limit: int = 30
    ) -> List[Dict[str, Any]]:
        """Bleeding events newest first: event_date, type."""

    # ─── Writes ─────────────────────────────────────────────

    @abc.abstractmethod
    async def replace_correlations(self, user_id: str, records: Sequence[CorrelationRecord]) -> None:
        """Delete every correlation row for the user and insert ``records``.

        Implementations must make the swap atomic so readers never observe
        an empty set mid-replace.
        """

    @abc.abstractmethod
    async def upsert_insight(self, record: StoredInsightRecord) -> None:
        """Insert or overwrite the insight row for (user_id, date)."""

    @abc.abstractmethod
    async def set_score_recommendation(self, user_id: str, on_date: date, text: str) -> bool:
        """Write ``text`` into the day's score row; False when no row exists."""

    @abc.abstractmethod
    async def update_narrative(self, user_id: str, on_date: date, kind: str, text: str) -> bool:
        """Overwrite an existing narrative row; False when none exists."""

    @abc.abstractmethod
    async def insert_narrative(self, user_id: str, on_date: date, kind: str, text: str) -> None:
        """Insert a new narrative row."""


# ═══════════════════════════════════════════════════════════════
#  PostgreSQL implementation
# ═══════════════════════════════════════════════════════════════

_INSIGHT_COLUMNS = (
    "user_id", "date", "raw_insight_json", "home_narrative", "weekly_story",
    "forecast", "insight_nudge_title", "insight_nudge_body",
    "correlation_insights_json", "helps_hurts_json", "symptom_guidance_json",
    "contradictions_json", "model_used", "input_tokens", "output_tokens",
    "latency_ms", "pipeline_version", "status", "computed_at",
)
_JSON_COLUMNS = {
    "raw_insight_json", "correlation_insights_json", "helps_hurts_json",
    "symptom_guidance_json", "contradictions_json",
}


class PostgresHealthStore(HealthStore):
    """psycopg2-backed store.  Standalone, one connection per call."""

    def __init__(self, conn_str: Optional[str] = None):
        self.conn_str = conn_str or get_conn_str()

    # ─── Sync helpers (run in threads) ─────────────────────

    def _connect(self):
        if not self.conn_str:
            raise StoreError("POSTGRES_CONNECTION_STRING is not set")
        try:
            return psycopg2.connect(self.conn_str)
        except psycopg2.Error as e:
            raise StoreError(f"Could not connect to PostgreSQL: {e}") from e

    def _fetch_all(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        conn = self._connect()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params or ())
                return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _execute(self, query: str, params: Optional[tuple] = None) -> int:
        conn = self._connect()
        try:
            with conn:
                with conn.cursor() as cur:
                    cur.execute(query, params or ())
                    return cur.rowcount
        except psycopg2.Error as e:
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    async def _all(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._fetch_all, query, params)

    async def _one(self, query: str, params: Optional[tuple] = None) -> Optional[Dict[str, Any]]:
        rows = await self._all(query, params)
        return rows[0] if rows else None

    # ─── Reads ──────────────────────────────────────────────

    async def list_eligible_user_ids(self, min_log_days: int) -> List[str]:
        rows = await self._all(
            """
            SELECT user_id
            FROM daily_logs
            GROUP BY user_id
            HAVING COUNT(DISTINCT date) >= %s
            ORDER BY user_id
            """,
            (min_log_days,),
        )
        return [r["user_id"] for r in rows]

    async def fetch_daily_logs(self, user_id, *, limit=None, on_date=None):
        query = """
            SELECT date,
                   symptoms_json   AS symptoms,
                   sleep_hours,
                   sleep_quality,
                   mood,
                   context_tags,
                   cycle_data_json AS cycle_data
            FROM daily_logs
            WHERE user_id = %s
        """
        params: List[Any] = [user_id]
        if on_date is not None:
            query += " AND date = %s"
            params.append(on_date)
        query += " ORDER BY date DESC, id DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        return await self._all(query, tuple(params))

    async def fetch_med_logs(self, user_id, *, since=None, limit=None):
        query = """
            SELECT ml.medication_id,
                   m.name AS medication_name,
                   ml.date,
                   ml.taken
            FROM med_logs ml
            JOIN medications m ON m.id = ml.medication_id
            WHERE ml.user_id = %s
        """
        params: List[Any] = [user_id]
        if since is not None:
            query += " AND ml.date >= %s"
            params.append(since)
        query += " ORDER BY ml.date DESC"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)
        return await self._all(query, tuple(params))

    async def fetch_active_medications(self, user_id):
        return await self._all(
            "SELECT id, name, dose, time FROM medications WHERE user_id = %s AND active = TRUE ORDER BY id",
            (user_id,),
        )

    async def fetch_profile(self, user_id):
        return await self._one(
            "SELECT stage, symptoms, goals, date_of_birth FROM profiles WHERE user_id = %s LIMIT 1",
            (user_id,),
        )

    async def fetch_top_correlations(self, user_id, limit=15):
        return await self._all(
            """
            SELECT factor_a, factor_b, direction, confidence, effect_size_pct,
                   occurrences, total_opportunities, lag_days
            FROM user_correlations
            WHERE user_id = %s
            ORDER BY ABS(effect_size_pct) DESC
            LIMIT %s
            """,
            (user_id, limit),
        )

    async def fetch_recent_scores(self, user_id, limit=7):
        return await self._all(
            """
            SELECT date, readiness, sleep_score, symptom_load
            FROM computed_scores
            WHERE user_id = %s
            ORDER BY date DESC
            LIMIT %s
            """,
            (user_id, limit),
        )

    async def fetch_score(self, user_id, on_date):
        return await self._one(
            "SELECT date, readiness, sleep_score, symptom_load FROM computed_scores "
            "WHERE user_id = %s AND date = %s LIMIT 1",
            (user_id, on_date),
        )

    async def fetch_bleeding_events(self, user_id, *, since, limit=30):
        return await self._all(
            """
            SELECT event_date, type
            FROM bleeding_events
            WHERE user_id = %s AND event_date >= %s
            ORDER BY event_date DESC
            LIMIT %s
            """,
            (user_id, since, limit),
        )

    # ─── Writes ─────────────────────────────────────────────

    def _replace_correlations_sync(self, user_id: str, records: Sequence[CorrelationRecord]) -> None:
        conn = self._connect()
        try:
            # one transaction: readers see either the old set or the new one
            with conn:
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM user_correlations WHERE user_id = %s", (user_id,))
                    for rec in records:
                        cur.execute(
                            """
                            INSERT INTO user_correlations
                                (user_id, factor_a, factor_b, direction, confidence,
                                 effect_size_pct, occurrences, total_opportunities,
                                 lag_days, computed_at)
                            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                            """,
                            (
                                user_id, rec.factor_a, rec.factor_b, rec.direction,
                                rec.confidence, rec.effect_size_pct, rec.occurrences,
                                rec.total_opportunities, rec.lag_days, rec.computed_at,
                            ),
                        )
        except psycopg2.Error as e:
            raise StoreError(f"Correlation replace failed for {user_id}: {e}") from e
        finally:
            conn.close()

    async def replace_correlations(self, user_id, records):
        await asyncio.to_thread(self._replace_correlations_sync, user_id, list(records))

    async def upsert_insight(self, record):
        row = record.to_row()
        values = tuple(
            Json(row[c]) if c in _JSON_COLUMNS else row[c] for c in _INSIGHT_COLUMNS
        )
        updates = ",\n                ".join(
            f"{c} = EXCLUDED.{c}" for c in _INSIGHT_COLUMNS if c not in ("user_id", "date")
        )
        query = f"""
            INSERT INTO interpreted_insights ({", ".join(_INSIGHT_COLUMNS)})
            VALUES ({", ".join(["%s"] * len(_INSIGHT_COLUMNS))})
            ON CONFLICT (user_id, date) DO UPDATE SET
                {updates}
        """
        await asyncio.to_thread(self._execute, query, values)

    async def set_score_recommendation(self, user_id, on_date, text):
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE computed_scores SET recommendation = %s WHERE user_id = %s AND date = %s",
            (text, user_id, on_date),
        )
        return updated > 0

    async def update_narrative(self, user_id, on_date, kind, text):
        updated = await asyncio.to_thread(
            self._execute,
            "UPDATE narratives SET text = %s WHERE user_id = %s AND date = %s AND type = %s",
            (text, user_id, on_date, kind),
        )
        return updated > 0

    async def insert_narrative(self, user_id, on_date, kind, text):
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO narratives (user_id, date, type, text) VALUES (%s, %s, %s, %s)",
            (user_id, on_date, kind, text),
        )
