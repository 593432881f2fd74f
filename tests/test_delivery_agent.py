"""
Tests for the safety & delivery agent and the legacy projections.

Covers: prohibited-phrase flagging, idempotent upsert, display budgets,
projection write-through and projection failure swallowing.
"""
import asyncio
from datetime import date

from delivery_agent import DeliveryAgent, PROHIBITED_PHRASES, scan_for_prohibited_content
from insight_schema import Insight, InsightNudge
from models import Provenance
from projections import NoOpProjection, ScoreRecommendationProjection, WeeklyStoryProjection
from fakes import InMemoryHealthStore

DAY = date(2025, 6, 15)
PROV = Provenance(model_used="gemini/gemini-2.5-flash", input_tokens=100, output_tokens=50, latency_ms=900)


def _insight(**kwargs):
    base = dict(
        daily_narrative="Good sleep helped today. Keep it gentle.",
        weekly_story="Steady week.",
        forecast="Tomorrow looks calm.",
        insight_nudge=InsightNudge(title="Wind down early", body="Lights out by ten."),
    )
    base.update(kwargs)
    return Insight(**base)


def _deliver(store, insight, projections=None, provenance=PROV):
    agent = DeliveryAgent(store, projections)
    return asyncio.run(agent.deliver("u1", DAY, insight, provenance))


# ─── Safety scan ──────────────────────────────────────────────


class TestSafetyScan:

    def test_flags_diagnosed_with(self):
        store = InMemoryHealthStore()
        result = _deliver(store, _insight(daily_narrative="You may be diagnosed with anemia."))
        assert result.status == "flagged"
        assert any("diagnosed with" in v for v in result.violations)
        # flagged insights are still stored
        assert store.insights[("u1", DAY)].status == "flagged"

    def test_clean_insight_is_complete(self):
        result = _deliver(InMemoryHealthStore(), _insight())
        assert result.status == "complete"
        assert result.violations == []

    def test_scan_is_case_insensitive_and_covers_nested_fields(self):
        insight = _insight(insight_nudge=InsightNudge(title="Tip", body="Ask about a PRESCRIPTION change"))
        assert scan_for_prohibited_content(insight) == ['Found prohibited phrase: "prescription"']

    def test_every_phrase_is_detected(self):
        for phrase in PROHIBITED_PHRASES:
            assert scan_for_prohibited_content(_insight(forecast=f"x {phrase} y")), phrase


# ─── Persistence ──────────────────────────────────────────────


class TestPersistence:

    def test_idempotent_upsert_overwrites(self):
        store = InMemoryHealthStore()
        _deliver(store, _insight(weekly_story="First run."))
        _deliver(store, _insight(weekly_story="Second run."))
        assert len(store.insights) == 1
        assert store.upsert_calls == 2
        assert store.insights[("u1", DAY)].weekly_story == "Second run."

    def test_record_fields(self):
        store = InMemoryHealthStore()
        _deliver(store, _insight(daily_narrative="One. Two. Three."))
        rec = store.insights[("u1", DAY)]
        assert rec.home_narrative == "One. Two."
        assert rec.raw_insight_json["dailyNarrative"] == "One. Two. Three."
        assert rec.helps_hurts_json == {"helps": [], "hurts": []}
        assert rec.model_used == "gemini/gemini-2.5-flash"
        assert (rec.input_tokens, rec.output_tokens, rec.latency_ms) == (100, 50, 900)
        assert rec.pipeline_version == 1


# ─── Projections ──────────────────────────────────────────────


class TestProjections:

    def test_score_recommendation_written_when_row_exists(self):
        store = InMemoryHealthStore()
        store.add_score("u1", DAY, readiness=70)
        _deliver(store, _insight())
        assert store.scores["u1"][0]["recommendation"] == "Good sleep helped today. Keep it gentle."

    def test_no_score_row_is_not_an_error(self):
        result = _deliver(InMemoryHealthStore(), _insight())
        assert result.status == "complete"

    def test_weekly_story_inserted_then_updated(self):
        store = InMemoryHealthStore()
        _deliver(store, _insight(weekly_story="First."))
        _deliver(store, _insight(weekly_story="Second."))
        assert store.narratives == {("u1", DAY, "weekly_story"): "Second."}

    def test_empty_story_never_creates_a_row(self):
        store = InMemoryHealthStore()
        _deliver(store, _insight(weekly_story=""))
        assert store.narratives == {}

    def test_empty_story_overwrites_existing_row(self):
        store = InMemoryHealthStore()
        store.narratives[("u1", DAY, "weekly_story")] = "Old."
        _deliver(store, _insight(weekly_story=""))
        assert store.narratives[("u1", DAY, "weekly_story")] == ""

    def test_projection_failure_is_swallowed(self):
        store = InMemoryHealthStore()
        store.add_score("u1", DAY, readiness=70)
        store.fail_narrative_writes = True
        result = _deliver(store, _insight())
        assert result.status == "complete"
        assert ("u1", DAY) in store.insights
        # the other projection still ran
        assert store.scores["u1"][0]["recommendation"]

    def test_explicit_projection_list(self):
        store = InMemoryHealthStore()
        store.add_score("u1", DAY, readiness=70)
        _deliver(store, _insight(), projections=[NoOpProjection()])
        assert store.scores["u1"][0]["recommendation"] is None
        assert store.narratives == {}

    def test_default_projections(self):
        agent = DeliveryAgent(InMemoryHealthStore())
        kinds = [type(p) for p in agent.projections]
        assert kinds == [ScoreRecommendationProjection, WeeklyStoryProjection]
