"""Helpers for cutting insight text down to the sizes the UI cards allow."""

from __future__ import annotations

import re
from dataclasses import dataclass

ELLIPSIS = "…"

# (max sentences, max words)
NARRATIVE_BUDGET = (2, 45)
WEEKLY_STORY_BUDGET = (3, 60)
FORECAST_BUDGET = (2, 40)
NUDGE_TITLE_WORDS = 6
NUDGE_BODY_WORDS = 30

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+")


def truncate_words(text: str, max_words: int) -> str:
    """Keep the first ``max_words`` whitespace-separated words."""
    text = str(text or "")
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words]) + ELLIPSIS


def truncate_sentences(text: str, max_sentences: int, max_words: int) -> str:
    """Keep the first ``max_sentences`` sentences, then apply the word cap.

    A sentence is a run ending in ``.``, ``!`` or ``?``; text with no
    terminator at all counts as one sentence.
    """
    text = str(text or "")
    sentences = [s.strip() for s in _SENTENCE_RE.findall(text)] or [text]
    limited = " ".join(sentences[:max_sentences]).strip()
    return truncate_words(limited, max_words)


@dataclass
class DisplayFields:
    home_narrative: str
    weekly_story: str
    forecast: str
    insight_nudge_title: str
    insight_nudge_body: str


def build_display_fields(insight) -> DisplayFields:
    """Budgeted display strings for an ``Insight``."""
    return DisplayFields(
        home_narrative=truncate_sentences(insight.daily_narrative, *NARRATIVE_BUDGET),
        weekly_story=truncate_sentences(insight.weekly_story, *WEEKLY_STORY_BUDGET),
        forecast=truncate_sentences(insight.forecast, *FORECAST_BUDGET),
        insight_nudge_title=truncate_words(insight.insight_nudge.title, NUDGE_TITLE_WORDS),
        insight_nudge_body=truncate_words(insight.insight_nudge.body, NUDGE_BODY_WORDS),
    )


def enforce_budgets(insight):
    """Return a copy of ``insight`` with every prose field inside its budget."""
    fields = build_display_fields(insight)
    nudge = insight.insight_nudge.model_copy(
        update={"title": fields.insight_nudge_title, "body": fields.insight_nudge_body}
    )
    return insight.model_copy(
        update={
            "daily_narrative": fields.home_narrative,
            "weekly_story": fields.weekly_story,
            "forecast": fields.forecast,
            "insight_nudge": nudge,
        }
    )
