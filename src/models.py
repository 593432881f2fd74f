"""Records shared between the engine, the pipeline and the store."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List

PIPELINE_VERSION = 1


@dataclass
class CorrelationRecord:
    user_id: str
    factor_a: str
    factor_b: str
    direction: str
    confidence: float
    effect_size_pct: float
    occurrences: int
    total_opportunities: int
    lag_days: int
    computed_at: datetime = field(default_factory=datetime.utcnow)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Provenance:
    """Where an insight came from and what it cost."""

    model_used: str
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class StoredInsightRecord:
    user_id: str
    date: date
    raw_insight_json: Dict[str, Any]
    home_narrative: str
    weekly_story: str
    forecast: str
    insight_nudge_title: str
    insight_nudge_body: str
    correlation_insights_json: List[Dict[str, Any]]
    helps_hurts_json: Dict[str, Any]
    symptom_guidance_json: Dict[str, Any]
    contradictions_json: List[Dict[str, Any]]
    model_used: str
    input_tokens: int
    output_tokens: int
    latency_ms: int
    status: str
    pipeline_version: int = PIPELINE_VERSION
    computed_at: datetime = field(default_factory=datetime.utcnow)

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)
