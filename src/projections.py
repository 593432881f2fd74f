"""
Legacy write-through projections.

Older screens still read ``computed_scores.recommendation`` and the
``weekly_story`` narrative.  Each projection copies one display field into
its legacy home after an insight is stored.
"""

from __future__ import annotations

import abc
import logging
from datetime import date

from store import HealthStore

log = logging.getLogger("projections")

WEEKLY_STORY_KIND = "weekly_story"


class LegacyProjection(abc.ABC):
    name = "projection"

    @abc.abstractmethod
    async def project(self, user_id: str, on_date: date, display) -> None:
        """Copy the relevant field of ``display`` (a ``DisplayFields``)."""


class ScoreRecommendationProjection(LegacyProjection):
    """Home narrative -> today's score row, when one exists."""

    name = "score_recommendation"

    def __init__(self, store: HealthStore):
        self.store = store

    async def project(self, user_id, on_date, display):
        updated = await self.store.set_score_recommendation(user_id, on_date, display.home_narrative)
        if not updated:
            log.debug("   %s: no score row for %s, recommendation not copied", user_id, on_date)


class WeeklyStoryProjection(LegacyProjection):
    """Weekly story -> narratives row; a new row is only created for a non-empty story."""

    name = "weekly_story"

    def __init__(self, store: HealthStore):
        self.store = store

    async def project(self, user_id, on_date, display):
        story = display.weekly_story
        if await self.store.update_narrative(user_id, on_date, WEEKLY_STORY_KIND, story):
            return
        if story:
            await self.store.insert_narrative(user_id, on_date, WEEKLY_STORY_KIND, story)


class NoOpProjection(LegacyProjection):
    name = "noop"

    async def project(self, user_id, on_date, display):
        return None


def default_projections(store: HealthStore):
    return [ScoreRecommendationProjection(store), WeeklyStoryProjection(store)]
