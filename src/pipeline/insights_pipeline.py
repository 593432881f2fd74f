"""Daily insights pipeline: gather, interpret under a deadline, fall back, deliver."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from context_aggregator import InsightContext, gather_user_context
from delivery_agent import DeliveryAgent
from insights_fallback import generate_fallback_insight
from models import Provenance
from reasoning_agent import Interpreted, Outcome, ReasoningAdapter
from settings import PipelineSettings
from store import HealthStore, StoreError

log = logging.getLogger("insights_pipeline")

# Per-user states
GATHERING = "gathering"
INTERPRETING = "interpreting"
COMPLETE = "complete"
FALLBACK = "fallback"
DELIVERED = "delivered"

FORCED_FALLBACK_MODEL = "fallback"
REASON_LIMIT = 200


def fallback_model_label(outcome: Outcome) -> str:
    """Provenance label for a fallback that replaced a failed outcome."""
    return _failure_label(type(outcome).__name__, outcome.reason)


def _failure_label(kind: str, reason: str) -> str:
    return f"fallback:{kind}:{reason[:REASON_LIMIT]}"


class InsightsPipeline:
    """Per-user state machine plus the grouped batch runner."""

    def __init__(
        self,
        store: HealthStore,
        adapter: ReasoningAdapter,
        settings: Optional[PipelineSettings] = None,
        delivery: Optional[DeliveryAgent] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.settings = settings or PipelineSettings()
        self.delivery = delivery or DeliveryAgent(store)

    # ─── One user ──────────────────────────────────────────

    @staticmethod
    def _enter(user_id: str, state: str) -> None:
        log.debug("   %s -> %s", user_id, state)

    async def process_user(self, user_id: str, on_date: date, use_fallback: bool) -> Dict[str, Any]:
        """Run one user through the state machine.

        Store errors while gathering propagate; generation errors never do.
        A store error delivering the interpreted insight is retried once
        with the fallback insight.
        """
        self._enter(user_id, GATHERING)
        ctx = await gather_user_context(self.store, user_id, on_date)

        if use_fallback:
            self._enter(user_id, FALLBACK)
            await self._deliver_fallback(ctx, on_date, FORCED_FALLBACK_MODEL)
            return {"tokens": 0, "status": FALLBACK}

        self._enter(user_id, INTERPRETING)
        outcome = await self.adapter.interpret_within(ctx, self.settings.timeout_seconds)

        if isinstance(outcome, Interpreted):
            self._enter(user_id, COMPLETE)
            try:
                await self.delivery.deliver(
                    user_id,
                    on_date,
                    outcome.insight,
                    Provenance(
                        model_used=outcome.model,
                        input_tokens=outcome.input_tokens,
                        output_tokens=outcome.output_tokens,
                        latency_ms=outcome.latency_ms,
                    ),
                )
            except StoreError as e:
                # one fallback attempt; a second store failure propagates
                log.warning("Delivery failed for %s: [StoreError] %s", user_id, e)
                self._enter(user_id, FALLBACK)
                await self._deliver_fallback(ctx, on_date, _failure_label("StoreError", str(e)))
                return {"tokens": 0, "status": FALLBACK}
            self._enter(user_id, DELIVERED)
            return {"tokens": outcome.input_tokens + outcome.output_tokens, "status": COMPLETE}

        log.warning(
            "AI failed for %s: [%s] %s", user_id, type(outcome).__name__, outcome.reason
        )
        self._enter(user_id, FALLBACK)
        await self._deliver_fallback(ctx, on_date, fallback_model_label(outcome))
        return {"tokens": 0, "status": FALLBACK}

    async def _deliver_fallback(self, ctx: InsightContext, on_date: date, model_used: str) -> None:
        insight = generate_fallback_insight(ctx)
        await self.delivery.deliver(ctx.user_id, on_date, insight, Provenance(model_used=model_used))
        self._enter(ctx.user_id, DELIVERED)

    # ─── Batch ─────────────────────────────────────────────

    async def _eligible_user_ids(self) -> List[str]:
        user_ids = await self.store.list_eligible_user_ids(self.settings.min_log_days)
        allowlist = self.settings.user_allowlist
        if allowlist:
            user_ids = [uid for uid in user_ids if uid in allowlist]
        return user_ids

    async def run_for_all_eligible_users(self, on_date: Optional[date] = None) -> Dict[str, int]:
        """Process every eligible user in fixed-size concurrent groups.

        Always returns {processed, fallbacks, errors, total_tokens}.
        """
        on_date = on_date or datetime.utcnow().date()
        use_fallback = not self.settings.pipeline_enabled
        started = time.monotonic()
        run_status: Dict[str, Any] = {
            "run_date": on_date.isoformat(),
            "run_started_at": datetime.utcnow().isoformat() + "Z",
            "mode": "fallback_only" if use_fallback else "reasoning",
        }

        log.info("=" * 60)
        log.info("  INSIGHTS PIPELINE STARTED")
        log.info("  Date: %s  Mode: %s", on_date, run_status["mode"])
        log.info("=" * 60)

        user_ids = await self._eligible_user_ids()
        log.info("%d eligible users (>= %d log days)", len(user_ids), self.settings.min_log_days)

        processed = fallbacks = errors = total_tokens = 0
        batch_size = self.settings.batch_size
        for start in range(0, len(user_ids), batch_size):
            batch = user_ids[start:start + batch_size]
            log.info(
                "Batch %d/%d: %d users",
                start // batch_size + 1, -(-len(user_ids) // batch_size), len(batch),
            )
            results = await asyncio.gather(
                *(self.process_user(uid, on_date, use_fallback) for uid in batch),
                return_exceptions=True,
            )
            for uid, result in zip(batch, results):
                if isinstance(result, BaseException):
                    log.error(
                        "Insights run failed for user %s", uid,
                        exc_info=(type(result), result, result.__traceback__),
                    )
                    errors += 1
                    continue
                total_tokens += result["tokens"]
                if result["status"] == COMPLETE:
                    processed += 1
                else:
                    fallbacks += 1

        summary = {
            "processed": processed,
            "fallbacks": fallbacks,
            "errors": errors,
            "total_tokens": total_tokens,
        }
        run_status.update(summary)
        run_status["eligible_users"] = len(user_ids)
        run_status["duration_s"] = round(time.monotonic() - started, 2)
        run_status["run_finished_at"] = datetime.utcnow().isoformat() + "Z"

        self._log_summary(run_status)
        self._write_status_file(run_status)
        return summary

    async def run_for_user(self, user_id: str, on_date: Optional[date] = None) -> Dict[str, Any]:
        """On-demand run for one user; always asks the reasoning service.

        Errors propagate to the caller.
        """
        return await self.process_user(user_id, on_date or datetime.utcnow().date(), use_fallback=False)

    # ─── Reporting ─────────────────────────────────────────

    @staticmethod
    def _log_summary(status: Dict[str, Any]) -> None:
        log.info("INSIGHTS SUMMARY:")
        log.info("  Eligible users: %d", status.get("eligible_users", 0))
        log.info("  Processed:      %d", status.get("processed", 0))
        log.info("  Fallbacks:      %d", status.get("fallbacks", 0))
        log.info("  Errors:         %d", status.get("errors", 0))
        log.info("  Total tokens:   %d", status.get("total_tokens", 0))
        log.info("  Duration:       %.2fs", status.get("duration_s", 0.0))

    def _write_status_file(self, status: Dict[str, Any]) -> None:
        path = self.settings.status_path
        if not path:
            return
        try:
            with open(path, "w", encoding="utf-8") as fh:
                json.dump(status, fh, indent=2, ensure_ascii=False)
            log.info("Pipeline status written to %s", path)
        except OSError as e:
            log.warning("Failed to write pipeline status file: %s", e)
