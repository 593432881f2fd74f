"""
Safety & Delivery Agent
=======================
Last stop for every insight, AI or fallback:

  1. scan the serialised insight for prohibited medical language
     (any hit -> status ``flagged``; flagged insights are still stored)
  2. cut display fields down to their budgets
  3. upsert one row per (user_id, date)
  4. write through to legacy projections (failures logged, never raised)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Sequence

from insight_schema import Insight
from models import Provenance, StoredInsightRecord
from pipeline.summary_builder import build_display_fields
from projections import LegacyProjection, default_projections
from store import HealthStore

log = logging.getLogger("delivery_agent")

PROHIBITED_PHRASES = (
    "you have",
    "diagnosed with",
    "diagnosis",
    "stop taking",
    "discontinue",
    "you should start",
    "prescribe",
    "prescription",
)

STATUS_COMPLETE = "complete"
STATUS_FLAGGED = "flagged"


@dataclass
class DeliveryResult:
    status: str
    violations: List[str] = field(default_factory=list)


def scan_for_prohibited_content(insight: Insight) -> List[str]:
    """One violation message per prohibited phrase found anywhere in the insight."""
    text = json.dumps(insight.to_wire(), ensure_ascii=False).lower()
    return [f'Found prohibited phrase: "{p}"' for p in PROHIBITED_PHRASES if p in text]


class DeliveryAgent:

    def __init__(
        self,
        store: HealthStore,
        projections: Optional[Sequence[LegacyProjection]] = None,
    ):
        self.store = store
        self.projections = list(default_projections(store) if projections is None else projections)

    async def deliver(
        self, user_id: str, on_date: date, insight: Insight, provenance: Provenance
    ) -> DeliveryResult:
        violations = scan_for_prohibited_content(insight)
        status = STATUS_FLAGGED if violations else STATUS_COMPLETE
        if violations:
            log.warning("Content safety violations for %s: %s", user_id, "; ".join(violations))

        display = build_display_fields(insight)
        wire = insight.to_wire()
        record = StoredInsightRecord(
            user_id=user_id,
            date=on_date,
            raw_insight_json=wire,
            home_narrative=display.home_narrative,
            weekly_story=display.weekly_story,
            forecast=display.forecast,
            insight_nudge_title=display.insight_nudge_title,
            insight_nudge_body=display.insight_nudge_body,
            correlation_insights_json=wire["correlationInsights"],
            helps_hurts_json=wire["helpsHurts"],
            symptom_guidance_json=wire["symptomGuidance"],
            contradictions_json=wire["contradictions"],
            model_used=provenance.model_used,
            input_tokens=provenance.input_tokens,
            output_tokens=provenance.output_tokens,
            latency_ms=provenance.latency_ms,
            status=status,
        )
        await self.store.upsert_insight(record)

        for projection in self.projections:
            try:
                await projection.project(user_id, on_date, display)
            except Exception as e:
                log.warning("Legacy projection %s failed for %s: %s", projection.name, user_id, e)

        log.info("   %s: insight delivered (status=%s, model=%s)", user_id, status, provenance.model_used)
        return DeliveryResult(status=status, violations=violations)
