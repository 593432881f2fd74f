"""
Day-vector builder.

Turns raw daily log rows and medication-intake rows into per-date boolean
presence maps of factors and symptoms.  Also owns the same-day merge rule
that the context aggregator reuses when collapsing recent logs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from constants import (
    EXERCISE_TAGS,
    LONG_SLEEP_HOURS,
    MED_FACTOR_PREFIX,
    SHORT_SLEEP_HOURS,
    SOCIAL_TAGS,
    STRESS_TAGS,
)


@dataclass
class DayVector:
    factors: Set[str] = field(default_factory=set)
    symptoms: Set[str] = field(default_factory=set)


@dataclass
class MergedDay:
    """One calendar day after collapsing every log row recorded for it."""

    date: date
    sleep_hours: Optional[float] = None
    sleep_quality: Optional[str] = None
    mood: Optional[int] = None
    cycle_data: Optional[Dict[str, Any]] = None
    symptoms: Dict[str, float] = field(default_factory=dict)
    context_tags: List[str] = field(default_factory=list)


def to_date(value: Any) -> date:
    """Normalise a date-ish value (date, datetime, Timestamp, ISO str)."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def severity(value: Any) -> Optional[float]:
    """Return a positive numeric severity, or None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value > 0 else None


def _tags(raw: Any) -> List[str]:
    if not raw or not isinstance(raw, (list, tuple)):
        return []
    return [str(t) for t in raw]


def merge_day_logs(rows: Iterable[Dict[str, Any]]) -> Dict[date, MergedDay]:
    """Collapse log rows by date.

    Scalars take the most recently seen non-null value, symptom severities
    merge via max (positive values only) and tags are unioned in first-seen
    order.
    """
    merged: Dict[date, MergedDay] = {}
    for row in rows:
        day_key = to_date(row["date"])
        day = merged.get(day_key)
        if day is None:
            day = merged[day_key] = MergedDay(date=day_key)

        if row.get("sleep_hours") is not None:
            day.sleep_hours = float(row["sleep_hours"])
        if row.get("sleep_quality") is not None:
            day.sleep_quality = row["sleep_quality"]
        if row.get("mood") is not None:
            day.mood = row["mood"]
        if row.get("cycle_data"):
            day.cycle_data = row["cycle_data"]

        symptoms = row.get("symptoms")
        if isinstance(symptoms, dict):
            for name, value in symptoms.items():
                sev = severity(value)
                if sev is not None:
                    day.symptoms[name] = max(day.symptoms.get(name, 0.0), sev)

        for tag in _tags(row.get("context_tags")):
            if tag not in day.context_tags:
                day.context_tags.append(tag)
    return merged


def _has_any(tags: List[str], needles: Iterable[str]) -> bool:
    lower = {t.lower() for t in tags}
    return any(n in lower for n in needles)


def factors_for_day(day: MergedDay) -> Set[str]:
    factors: Set[str] = set()
    if day.sleep_hours is not None:
        if day.sleep_hours < SHORT_SLEEP_HOURS:
            factors.add("sleep_under_6h")
        if day.sleep_hours >= LONG_SLEEP_HOURS:
            factors.add("sleep_over_7h")

    tags = day.context_tags
    if _has_any(tags, EXERCISE_TAGS):
        factors.add("exercised")
    if _has_any(tags, ("alcohol",)):
        factors.add("alcohol")
    if _has_any(tags, ("caffeine",)):
        factors.add("caffeine")
    if _has_any(tags, STRESS_TAGS):
        factors.add("high_stress")
    if _has_any(tags, SOCIAL_TAGS):
        factors.add("social_activity")

    if isinstance(day.cycle_data, dict) and day.cycle_data.get("status") == "period":
        factors.add("period_day")
    return factors


def build_day_vectors(
    log_rows: Iterable[Dict[str, Any]],
    med_log_rows: Iterable[Dict[str, Any]] = (),
) -> Dict[date, DayVector]:
    """Build ``date -> DayVector`` for one user.

    ``log_rows`` carry ``date``, ``symptoms`` (name -> severity),
    ``sleep_hours``, ``context_tags`` and ``cycle_data``; ``med_log_rows``
    carry ``date``, ``medication_name`` and ``taken``.
    """
    vectors: Dict[date, DayVector] = {}
    for day_key, day in merge_day_logs(log_rows).items():
        vectors[day_key] = DayVector(
            factors=factors_for_day(day),
            symptoms=set(day.symptoms),
        )

    for row in med_log_rows:
        day_key = to_date(row["date"])
        vec = vectors.setdefault(day_key, DayVector())
        if row.get("taken"):
            vec.factors.add(f"{MED_FACTOR_PREFIX}{row['medication_name']}")
    return vectors
