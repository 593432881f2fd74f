"""
Contract tests for the insights pipeline.

Covers:
- Interpreted path provenance and token accounting
- Fallback delivery when storing the reply fails
- Timeout / malformed / transport failures falling back
- Forced-fallback mode and the user allow-list
- Batch fault isolation and grouping
- run_for_user error propagation
- Status file writing
"""
import asyncio
import json
from concurrent.futures import ThreadPoolExecutor
from datetime import date, timedelta
from unittest.mock import patch

import pytest

from pipeline.insights_pipeline import InsightsPipeline, fallback_model_label
from reasoning_agent import Malformed, ReasoningAdapter, ReasoningTransportError, TimedOut
from settings import PipelineSettings
from store import StoreError
from fakes import FailingClient, InMemoryHealthStore, SlowClient, StaticClient, valid_insight_payload

DAY = date(2025, 6, 15)


def _seed_user(store, user_id, days=14):
    for n in range(days):
        store.add_log(user_id, DAY - timedelta(days=n), sleep_hours=7, symptoms={"hot_flashes": 1})


def _pipeline(store, client=None, **settings):
    settings.setdefault("timeout_seconds", 5.0)
    adapter = ReasoningAdapter(client or StaticClient(), model_name="gemini/gemini-2.5-flash")
    return InsightsPipeline(store, adapter, PipelineSettings(**settings))


# ─── Single user ──────────────────────────────────────────────


class TestProcessUser:

    def test_interpreted_path(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        result = asyncio.run(_pipeline(store).process_user("u1", DAY, use_fallback=False))
        assert result == {"tokens": 200, "status": "complete"}
        rec = store.insights[("u1", DAY)]
        assert rec.model_used == "gemini/gemini-2.5-flash"
        assert rec.status == "complete"

    def test_timeout_falls_back(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        pipeline = _pipeline(store, SlowClient(delay=0.3), timeout_seconds=0.01)

        result = asyncio.run(pipeline.process_user("u1", DAY, use_fallback=False))

        assert result == {"tokens": 0, "status": "fallback"}
        rec = store.insights[("u1", DAY)]
        assert rec.model_used.startswith("fallback:TimedOut:")
        assert (rec.input_tokens, rec.output_tokens, rec.latency_ms) == (0, 0, 0)
        assert rec.status == "complete"

    def test_malformed_reply_falls_back(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        result = asyncio.run(
            _pipeline(store, StaticClient(content="oops")).process_user("u1", DAY, use_fallback=False)
        )
        assert result["status"] == "fallback"
        assert store.insights[("u1", DAY)].model_used.startswith("fallback:Malformed:")

    def test_transport_failure_falls_back(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        client = FailingClient(ReasoningTransportError("quota exceeded"))
        asyncio.run(_pipeline(store, client).process_user("u1", DAY, use_fallback=False))
        assert store.insights[("u1", DAY)].model_used == "fallback:TransportFailure:quota exceeded"

    def test_forced_fallback_skips_reasoning(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        client = StaticClient()
        result = asyncio.run(_pipeline(store, client).process_user("u1", DAY, use_fallback=True))
        assert result == {"tokens": 0, "status": "fallback"}
        assert client.calls == []
        assert store.insights[("u1", DAY)].model_used == "fallback"

    def test_flagged_reply_is_still_complete_path(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        client = StaticClient(content=json.dumps(valid_insight_payload(forecast="You have a cold coming.")))
        result = asyncio.run(_pipeline(store, client).process_user("u1", DAY, use_fallback=False))
        assert result["status"] == "complete"
        assert store.insights[("u1", DAY)].status == "flagged"

    def test_failed_delivery_of_reply_falls_back_once(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        store.fail_next_upserts = 1

        result = asyncio.run(_pipeline(store).process_user("u1", DAY, use_fallback=False))

        assert result == {"tokens": 0, "status": "fallback"}
        assert store.upsert_calls == 2
        rec = store.insights[("u1", DAY)]
        assert rec.model_used == "fallback:StoreError:unsupported Unicode escape sequence"

    def test_failed_fallback_delivery_propagates(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        store.fail_next_upserts = 2
        with pytest.raises(StoreError):
            asyncio.run(_pipeline(store).process_user("u1", DAY, use_fallback=False))
        assert ("u1", DAY) not in store.insights


class TestFallbackLabel:

    def test_reason_is_capped(self):
        label = fallback_model_label(Malformed(error="x" * 500))
        assert label == "fallback:Malformed:" + "x" * 200

    def test_timeout_label(self):
        assert fallback_model_label(TimedOut(timeout_s=30.0)) == "fallback:TimedOut:no reply within 30s"


# ─── Batch ────────────────────────────────────────────────────


class TestRunForAllEligibleUsers:

    def test_fault_isolation(self):
        store = InMemoryHealthStore()
        for i in range(5):
            _seed_user(store, f"user{i}")
        store.fail_reads_for["user2"] = RuntimeError("profile table missing")

        result = asyncio.run(_pipeline(store, batch_size=2).run_for_all_eligible_users(DAY))

        assert result == {"processed": 4, "fallbacks": 0, "errors": 1, "total_tokens": 800}
        assert ("user2", DAY) not in store.insights
        assert len(store.insights) == 4

    def test_generation_failures_are_not_errors(self):
        store = InMemoryHealthStore()
        for i in range(3):
            _seed_user(store, f"user{i}")
        client = FailingClient(ReasoningTransportError("down"))
        result = asyncio.run(_pipeline(store, client).run_for_all_eligible_users(DAY))
        assert result == {"processed": 0, "fallbacks": 3, "errors": 0, "total_tokens": 0}

    def test_pipeline_disabled_forces_fallback(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        client = StaticClient()
        result = asyncio.run(
            _pipeline(store, client, pipeline_enabled=False).run_for_all_eligible_users(DAY)
        )
        assert result["fallbacks"] == 1
        assert client.calls == []
        assert store.insights[("u1", DAY)].model_used == "fallback"

    def test_allowlist_filters_users(self):
        store = InMemoryHealthStore()
        for uid in ("a", "b", "c"):
            _seed_user(store, uid)
        result = asyncio.run(
            _pipeline(store, user_allowlist=("a", "c", "zz")).run_for_all_eligible_users(DAY)
        )
        assert result["processed"] == 2
        assert {uid for uid, _ in store.insights} == {"a", "c"}

    def test_ineligible_users_skipped(self):
        store = InMemoryHealthStore()
        _seed_user(store, "new_user", days=13)
        result = asyncio.run(_pipeline(store).run_for_all_eligible_users(DAY))
        assert result == {"processed": 0, "fallbacks": 0, "errors": 0, "total_tokens": 0}

    def test_group_larger_than_default_executor_meets_deadline(self):
        store = InMemoryHealthStore()
        for i in range(10):
            _seed_user(store, f"u{i:02d}")
        client = SlowClient(delay=0.3)
        pipeline = _pipeline(store, client, timeout_seconds=0.5, batch_size=10)

        async def scenario():
            asyncio.get_running_loop().set_default_executor(ThreadPoolExecutor(max_workers=2))
            return await pipeline.run_for_all_eligible_users(DAY)

        result = asyncio.run(scenario())

        assert result == {"processed": 10, "fallbacks": 0, "errors": 0, "total_tokens": 2000}
        # every call in the group was in flight together
        assert client.max_in_flight == 10

    def test_users_processed_in_eligibility_order(self):
        store = InMemoryHealthStore()
        for i in range(5):
            _seed_user(store, f"user{i}")
        pipeline = _pipeline(store, batch_size=2)
        seen = []
        original = pipeline.process_user

        async def tracking(user_id, on_date, use_fallback):
            seen.append(user_id)
            return await original(user_id, on_date, use_fallback)

        with patch.object(pipeline, "process_user", side_effect=tracking):
            asyncio.run(pipeline.run_for_all_eligible_users(DAY))
        assert seen == [f"user{i}" for i in range(5)]


# ─── run_for_user ─────────────────────────────────────────────


class TestRunForUser:

    def test_ignores_disabled_flag(self):
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        result = asyncio.run(_pipeline(store, pipeline_enabled=False).run_for_user("u1", DAY))
        assert result["status"] == "complete"

    def test_store_errors_propagate(self):
        store = InMemoryHealthStore()
        store.fail_reads_for["u1"] = RuntimeError("db down")
        with pytest.raises(RuntimeError, match="db down"):
            asyncio.run(_pipeline(store).run_for_user("u1", DAY))


# ─── Status file ──────────────────────────────────────────────


class TestStatusFile:

    def test_written_when_path_configured(self, tmp_path):
        path = tmp_path / "insights_status.json"
        store = InMemoryHealthStore()
        _seed_user(store, "u1")
        asyncio.run(_pipeline(store, status_path=str(path)).run_for_all_eligible_users(DAY))

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["run_date"] == "2025-06-15"
        assert data["processed"] == 1
        assert data["mode"] == "reasoning"
        assert "run_finished_at" in data

    def test_write_failure_is_not_raised(self, tmp_path):
        store = InMemoryHealthStore()
        bad_path = tmp_path / "missing_dir" / "status.json"
        result = asyncio.run(_pipeline(store, status_path=str(bad_path)).run_for_all_eligible_users(DAY))
        assert result["errors"] == 0
        assert not bad_path.exists()
