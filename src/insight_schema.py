"""
Insight output contract.

Both the reasoning service and the fallback generator produce this shape.
Wire keys are camelCase (``dailyNarrative``); attributes are snake_case.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_NUDGE = {"title": "Insight", "body": ""}

# Top-level key -> value used when the key is missing or falsy.
TOP_LEVEL_DEFAULTS: Dict[str, Any] = {
    "correlationInsights": [],
    "dailyNarrative": "",
    "weeklyStory": "",
    "forecast": "",
    "insightNudge": DEFAULT_NUDGE,
    "helpsHurts": {"helps": [], "hurts": []},
    "contradictions": [],
    "symptomGuidance": {},
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class CorrelationInsight(_CamelModel):
    factor: str
    symptom: str
    direction: str
    effect_pp: float = 0.0
    explanation: str = ""
    mechanism: str = ""
    actionable: bool = False
    recommendation: str = ""
    caveat: Optional[str] = None
    confidence_level: str = "low"


class HelpsHurtsEntry(_CamelModel):
    factor: str
    symptom: str
    explanation: str = ""
    strength: float = 0.0


class HelpsHurts(_CamelModel):
    helps: List[HelpsHurtsEntry] = Field(default_factory=list)
    hurts: List[HelpsHurtsEntry] = Field(default_factory=list)


class Contradiction(_CamelModel):
    factor: str
    helps_symptom: str
    hurts_symptom: str
    explanation: str = ""


class SymptomGuidance(_CamelModel):
    explanation: str = ""
    recommendations: List[str] = Field(default_factory=list)
    related_factors: List[str] = Field(default_factory=list)


class InsightNudge(_CamelModel):
    title: str = "Insight"
    body: str = ""


class Insight(_CamelModel):
    correlation_insights: List[CorrelationInsight] = Field(default_factory=list)
    daily_narrative: str = ""
    weekly_story: str = ""
    forecast: str = ""
    insight_nudge: InsightNudge = Field(default_factory=InsightNudge)
    helps_hurts: HelpsHurts = Field(default_factory=HelpsHurts)
    contradictions: List[Contradiction] = Field(default_factory=list)
    symptom_guidance: Dict[str, SymptomGuidance] = Field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        """camelCase JSON-ready dict (the stored raw payload)."""
        return self.model_dump(mode="json", by_alias=True)


def fill_missing_keys(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Replace missing or falsy top-level keys with their empty defaults."""
    filled = dict(payload)
    for key, default in TOP_LEVEL_DEFAULTS.items():
        if not filled.get(key):
            filled[key] = _copy_default(default)
    return filled


def _copy_default(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _copy_default(v) for k, v in value.items()}
    if isinstance(value, list):
        return list(value)
    return value
