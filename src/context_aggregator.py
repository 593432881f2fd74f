"""
Context Aggregator
==================
Builds one read-only ``InsightContext`` per (user, date) from concurrent
store reads.  Nothing here writes; store errors propagate to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

import numpy as np

from constants import PERIOD_EVENT_TYPES
from day_vectors import merge_day_logs, severity, to_date
from store import HealthStore

log = logging.getLogger("context_aggregator")

TOP_CORRELATIONS = 15
ADHERENCE_WINDOW_DAYS = 14
MED_LOG_LIMIT = 200
RECENT_SCORE_LIMIT = 7
RAW_LOG_LIMIT = 30
RECENT_LOG_DAYS = 14
BLEEDING_WINDOW_DAYS = 90
BLEEDING_EVENT_LIMIT = 30
PERIOD_DATE_LIMIT = 10


@dataclass
class ProfileSummary:
    stage: Optional[str] = None
    symptoms: List[str] = field(default_factory=list)
    goals: List[str] = field(default_factory=list)
    date_of_birth: Optional[str] = None


@dataclass
class CorrelationSummary:
    factor_a: str
    factor_b: str
    direction: str
    effect_size_pct: float = 0.0
    occurrences: int = 0
    lag_days: int = 0


@dataclass
class MedicationSummary:
    name: str
    dose: Optional[str] = None
    time: Optional[str] = None
    recent_adherence_pct: float = 0.0


@dataclass
class ScoreSummary:
    date: str
    readiness: Optional[float] = None
    sleep_score: Optional[float] = None
    symptom_load: Optional[float] = None


@dataclass
class LogSummary:
    date: str
    sleep_hours: Optional[float] = None
    sleep_quality: Optional[str] = None
    mood: Optional[int] = None
    symptoms: Dict[str, float] = field(default_factory=dict)
    context_tags: List[str] = field(default_factory=list)


@dataclass
class CycleSummary:
    recent_period_dates: List[str] = field(default_factory=list)
    avg_cycle_length: Optional[float] = None
    stage: Optional[str] = None


@dataclass
class TodaySnapshot:
    readiness: Optional[float] = None
    sleep_hours: Optional[float] = None
    top_symptom: Optional[str] = None
    mood: Optional[int] = None


@dataclass
class InsightContext:
    user_id: str
    date: str
    profile: ProfileSummary = field(default_factory=ProfileSummary)
    correlations: List[CorrelationSummary] = field(default_factory=list)
    medications: List[MedicationSummary] = field(default_factory=list)
    recent_scores: List[ScoreSummary] = field(default_factory=list)
    recent_logs: List[LogSummary] = field(default_factory=list)
    cycle_data: Optional[CycleSummary] = None
    today: Optional[TodaySnapshot] = None


# ─── Row reducers ──────────────────────────────────────────────

def _str_list(value: Any) -> List[str]:
    return [str(v) for v in value] if isinstance(value, (list, tuple)) else []


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    return to_date(value).isoformat()


def build_profile(row: Optional[Dict[str, Any]]) -> ProfileSummary:
    if not row:
        return ProfileSummary()
    return ProfileSummary(
        stage=row.get("stage"),
        symptoms=_str_list(row.get("symptoms")),
        goals=_str_list(row.get("goals")),
        date_of_birth=_iso(row.get("date_of_birth")),
    )


def build_medications(
    med_rows: List[Dict[str, Any]], med_log_rows: List[Dict[str, Any]]
) -> List[MedicationSummary]:
    """Attach ``taken / logged * 100`` adherence to each active medication."""
    summaries = []
    for med in med_rows:
        entries = [ml for ml in med_log_rows if ml.get("medication_id") == med.get("id")]
        taken = sum(1 for ml in entries if ml.get("taken"))
        summaries.append(MedicationSummary(
            name=med["name"],
            dose=med.get("dose"),
            time=med.get("time"),
            recent_adherence_pct=(taken / len(entries) * 100) if entries else 0.0,
        ))
    return summaries


def build_recent_logs(rows: List[Dict[str, Any]]) -> List[LogSummary]:
    merged = merge_day_logs(rows)
    days = sorted(merged.values(), key=lambda d: d.date, reverse=True)[:RECENT_LOG_DAYS]
    return [
        LogSummary(
            date=d.date.isoformat(),
            sleep_hours=d.sleep_hours,
            sleep_quality=d.sleep_quality,
            mood=d.mood,
            symptoms=dict(d.symptoms),
            context_tags=list(d.context_tags),
        )
        for d in days
    ]


def average_cycle_length(period_start_dates: List[date]) -> Optional[float]:
    """Mean gap in days between successive period starts (None below two)."""
    if len(period_start_dates) < 2:
        return None
    ordinals = np.array(sorted(d.toordinal() for d in period_start_dates))
    return round(float(np.diff(ordinals).mean()), 1)


def build_cycle_summary(
    bleeding_rows: List[Dict[str, Any]], stage: Optional[str]
) -> Optional[CycleSummary]:
    period_rows = [r for r in bleeding_rows if r.get("type") in PERIOD_EVENT_TYPES]
    if not period_rows:
        return None
    starts = [to_date(r["event_date"]) for r in period_rows if r.get("type") == "period_start"]
    return CycleSummary(
        recent_period_dates=[_iso(r["event_date"]) for r in period_rows][:PERIOD_DATE_LIMIT],
        avg_cycle_length=average_cycle_length(starts),
        stage=stage,
    )


def build_today(
    today_rows: List[Dict[str, Any]], score_row: Optional[Dict[str, Any]]
) -> Optional[TodaySnapshot]:
    """Today's snapshot; None when there is neither a log nor a score."""
    if not today_rows and not score_row:
        return None

    snapshot = TodaySnapshot(readiness=(score_row or {}).get("readiness"))
    top_severity = 0.0
    for row in today_rows:
        if row.get("sleep_hours") is not None:
            snapshot.sleep_hours = float(row["sleep_hours"])
        if row.get("mood") is not None:
            snapshot.mood = row["mood"]
        symptoms = row.get("symptoms")
        if isinstance(symptoms, dict):
            for name, value in symptoms.items():
                sev = severity(value)
                if sev is not None and sev > top_severity:
                    top_severity = sev
                    snapshot.top_symptom = name
    return snapshot


# ─── Public entry point ───────────────────────────────────────

async def gather_user_context(store: HealthStore, user_id: str, on_date: date) -> InsightContext:
    """Issue every read concurrently and join the results."""
    (
        profile_row,
        correlation_rows,
        med_rows,
        score_rows,
        log_rows,
        bleeding_rows,
        today_rows,
        today_score,
        med_log_rows,
    ) = await asyncio.gather(
        store.fetch_profile(user_id),
        store.fetch_top_correlations(user_id, limit=TOP_CORRELATIONS),
        store.fetch_active_medications(user_id),
        store.fetch_recent_scores(user_id, limit=RECENT_SCORE_LIMIT),
        store.fetch_daily_logs(user_id, limit=RAW_LOG_LIMIT),
        store.fetch_bleeding_events(
            user_id, since=on_date - timedelta(days=BLEEDING_WINDOW_DAYS), limit=BLEEDING_EVENT_LIMIT
        ),
        store.fetch_daily_logs(user_id, on_date=on_date),
        store.fetch_score(user_id, on_date),
        store.fetch_med_logs(
            user_id, since=on_date - timedelta(days=ADHERENCE_WINDOW_DAYS), limit=MED_LOG_LIMIT
        ),
    )

    profile = build_profile(profile_row)
    ctx = InsightContext(
        user_id=user_id,
        date=on_date.isoformat(),
        profile=profile,
        correlations=[
            CorrelationSummary(
                factor_a=c["factor_a"],
                factor_b=c["factor_b"],
                direction=c["direction"],
                effect_size_pct=float(c.get("effect_size_pct") or 0.0),
                occurrences=int(c.get("occurrences") or 0),
                lag_days=int(c.get("lag_days") or 0),
            )
            for c in correlation_rows
        ],
        medications=build_medications(med_rows, med_log_rows),
        recent_scores=[
            ScoreSummary(
                date=_iso(s["date"]),
                readiness=s.get("readiness"),
                sleep_score=s.get("sleep_score"),
                symptom_load=s.get("symptom_load"),
            )
            for s in score_rows
        ],
        recent_logs=build_recent_logs(log_rows),
        cycle_data=build_cycle_summary(bleeding_rows, profile.stage),
        today=build_today(today_rows, today_score),
    )
    log.info(
        "   %s: context with %d correlations, %d log-days, %d scores",
        user_id, len(ctx.correlations), len(ctx.recent_logs), len(ctx.recent_scores),
    )
    return ctx
