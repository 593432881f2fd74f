"""
Templated fallback insight.

Produces an ``Insight`` of the same shape as the reasoning service's reply,
from the context alone, so delivery handles both paths identically.
"""

from __future__ import annotations

import math
from typing import Dict, List

from constants import MED_FACTOR_PREFIX
from context_aggregator import InsightContext
from insight_schema import (
    Contradiction,
    CorrelationInsight,
    HelpsHurts,
    HelpsHurtsEntry,
    Insight,
    InsightNudge,
    SymptomGuidance,
)

HIGH_CONFIDENCE_OCCURRENCES = 30
MODERATE_CONFIDENCE_OCCURRENCES = 15
ACTIONABLE_EFFECT_PCT = 20
HELPS_HURTS_LIMIT = 5
MIN_SCORES_FOR_WEEKLY_STORY = 3


def _round(x: float) -> int:
    """Round half up."""
    return int(math.floor(x + 0.5))


def format_factor(factor: str) -> str:
    if factor.startswith(MED_FACTOR_PREFIX):
        name = factor[len(MED_FACTOR_PREFIX):]
        return name[:1].upper() + name[1:]
    return " ".join(w[:1].upper() + w[1:] for w in factor.replace("_", " ").split(" "))


def format_symptom(symptom: str) -> str:
    return symptom.replace("_", " ")


def _capitalise(text: str) -> str:
    return text[:1].upper() + text[1:]


def confidence_level(occurrences: int) -> str:
    if occurrences >= HIGH_CONFIDENCE_OCCURRENCES:
        return "high"
    if occurrences >= MODERATE_CONFIDENCE_OCCURRENCES:
        return "moderate"
    return "low"


# ─── Sections ──────────────────────────────────────────────────

def _correlation_insights(ctx: InsightContext) -> List[CorrelationInsight]:
    insights = []
    for c in ctx.correlations:
        factor_label = format_factor(c.factor_a).lower()
        abs_pp = _round(abs(c.effect_size_pct))
        verb = "increases" if c.direction == "positive" else "reduces"
        level = confidence_level(c.occurrences)
        actionable = abs_pp >= ACTIONABLE_EFFECT_PCT
        insights.append(CorrelationInsight(
            factor=c.factor_a,
            symptom=c.factor_b,
            direction=c.direction,
            effect_pp=c.effect_size_pct,
            explanation=f"Your data shows {factor_label} {verb} {format_symptom(c.factor_b)} by {abs_pp}%.",
            mechanism="",
            actionable=actionable,
            recommendation=(
                f"Consider discussing {factor_label} with your healthcare provider."
                if actionable
                else "Keep tracking, more data will clarify this pattern."
            ),
            caveat=(
                f"Based on {c.occurrences} observations, an early signal that needs more data."
                if level == "low"
                else None
            ),
            confidence_level=level,
        ))
    return insights


def _helps_hurts(ctx: InsightContext) -> HelpsHurts:
    helps: List[HelpsHurtsEntry] = []
    hurts: List[HelpsHurtsEntry] = []
    for c in ctx.correlations:
        helping = c.direction == "negative"
        entry = HelpsHurtsEntry(
            factor=c.factor_a,
            symptom=c.factor_b,
            explanation=(
                f"{format_factor(c.factor_a)} {'reduces' if helping else 'increases'} "
                f"{format_symptom(c.factor_b)} by {_round(abs(c.effect_size_pct))}%."
            ),
            strength=abs(c.effect_size_pct),
        )
        (helps if helping else hurts).append(entry)

    helps.sort(key=lambda e: e.strength, reverse=True)
    hurts.sort(key=lambda e: e.strength, reverse=True)
    return HelpsHurts(helps=helps[:HELPS_HURTS_LIMIT], hurts=hurts[:HELPS_HURTS_LIMIT])


def _contradictions(ctx: InsightContext) -> List[Contradiction]:
    by_factor: Dict[str, Dict[str, List[str]]] = {}
    for c in ctx.correlations:
        dirs = by_factor.setdefault(c.factor_a, {"positive": [], "negative": []})
        dirs["positive" if c.direction == "positive" else "negative"].append(c.factor_b)

    found = []
    for factor, dirs in by_factor.items():
        if dirs["positive"] and dirs["negative"]:
            helped = format_symptom(dirs["negative"][0])
            hurt = format_symptom(dirs["positive"][0])
            found.append(Contradiction(
                factor=factor,
                helps_symptom=helped,
                hurts_symptom=hurt,
                explanation=(
                    f"{format_factor(factor)} appears to help with {helped} but worsen {hurt}. "
                    "This can happen when a factor affects different body systems. "
                    "Discuss timing or dosage with your doctor."
                ),
            ))
    return found


def _daily_narrative(ctx: InsightContext) -> str:
    today = ctx.today
    if today is None:
        return ""
    readiness = today.readiness
    sleep = today.sleep_hours
    top = format_symptom(today.top_symptom) if today.top_symptom else None

    if readiness is not None and readiness >= 70:
        text = (
            f"{sleep:g} hours of sleep is paying off, you're in a good place today."
            if sleep else "Your body feels well-rested today."
        )
        return text + " A good day to be active if you feel up to it."

    if readiness is not None and readiness >= 40:
        text = (
            f"You got {sleep:g} hours of sleep, which is helping."
            if sleep else "Some things are working in your favour."
        )
        if top:
            return text + f" {_capitalise(top)} is weighing on things, so listen to what your body needs."
        return text + " Listen to what your body needs today."

    if sleep and sleep < 6:
        text = f"Only {sleep:g} hours of sleep makes everything feel harder."
    elif top:
        text = f"{_capitalise(top)} is weighing heavily today."
    else:
        text = "Your body is carrying a lot today."
    return text + " Be extra gentle with yourself, rest is productive too."


def _weekly_story(ctx: InsightContext) -> str:
    scores = ctx.recent_scores
    if len(scores) < MIN_SCORES_FOR_WEEKLY_STORY:
        return ""
    avg = _round(sum((s.readiness or 0) for s in scores) / len(scores))
    tail = (
        "Things are trending well, keep up the habits that are working."
        if avg >= 60
        else "Some tough days, but each one gives us better data to work with."
    )
    return f"Your average readiness this week was {avg}. {tail}"


def _forecast(ctx: InsightContext) -> str:
    if ctx.today is None or ctx.today.readiness is None:
        return ""
    if ctx.today.readiness >= 60:
        return "If you sleep well tonight, tomorrow could be even better."
    return "A calm evening and early bedtime could help turn things around tomorrow."


def _nudge(ctx: InsightContext) -> InsightNudge:
    if not ctx.correlations:
        return InsightNudge(
            title="Keep tracking",
            body="More data means better insights. Log daily to see clearer patterns.",
        )
    top = ctx.correlations[0]
    return InsightNudge(
        title="Pattern detected",
        body=(
            f"{format_factor(top.factor_a)} affects your {format_symptom(top.factor_b)}. "
            f"We saw this in {top.occurrences} observations."
        ),
    )


def _symptom_guidance(ctx: InsightContext) -> Dict[str, SymptomGuidance]:
    active: List[str] = []
    for entry in ctx.recent_logs:
        for name, sev in entry.symptoms.items():
            if sev > 0 and name not in active:
                active.append(name)

    return {
        name: SymptomGuidance(
            explanation=f"You've been tracking {format_symptom(name)} recently.",
            recommendations=[
                "Keep logging daily to strengthen pattern detection.",
                "Note any new triggers or changes in routine.",
            ],
            related_factors=[c.factor_a for c in ctx.correlations if c.factor_b == name],
        )
        for name in active
    }


def generate_fallback_insight(ctx: InsightContext) -> Insight:
    """Deterministic ``Insight`` built from ``ctx`` without any external call."""
    return Insight(
        correlation_insights=_correlation_insights(ctx),
        daily_narrative=_daily_narrative(ctx),
        weekly_story=_weekly_story(ctx),
        forecast=_forecast(ctx),
        insight_nudge=_nudge(ctx),
        helps_hurts=_helps_hurts(ctx),
        contradictions=_contradictions(ctx),
        symptom_guidance=_symptom_guidance(ctx),
    )
