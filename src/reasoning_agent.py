"""
Reasoning Adapter
=================
Serialises an ``InsightContext`` into prompts, asks the reasoning service
(a crewai ``LLM``) to interpret it, and turns the reply into a validated
``Insight``.

``interpret`` raises; ``interpret_within`` never does and instead returns
one of ``Interpreted`` / ``TimedOut`` / ``Malformed`` / ``TransportFailure``.
Choosing a fallback is the orchestrator's job, not this module's.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from crewai import LLM
from pydantic import ValidationError

from context_aggregator import InsightContext
from insight_schema import Insight, fill_missing_keys
from pipeline.summary_builder import enforce_budgets
from settings import DEFAULT_MODEL, DEFAULT_TIMEOUT_SECONDS

log = logging.getLogger("reasoning_agent")


# ═══════════════════════════════════════════════════════════════
#  ERRORS + OUTCOMES
# ═══════════════════════════════════════════════════════════════

class ReasoningError(Exception):
    """Base class for reasoning-service failures."""


class ReasoningTransportError(ReasoningError):
    """The service could not be reached or returned an error."""


class MalformedInsightError(ReasoningError):
    """The reply was not a JSON object matching the Insight contract."""


@dataclass
class Interpreted:
    insight: Insight
    input_tokens: int
    output_tokens: int
    latency_ms: int
    model: str


@dataclass
class TimedOut:
    timeout_s: float

    @property
    def reason(self) -> str:
        return f"no reply within {self.timeout_s:g}s"


@dataclass
class Malformed:
    error: str

    @property
    def reason(self) -> str:
        return self.error


@dataclass
class TransportFailure:
    error: str

    @property
    def reason(self) -> str:
        return self.error


Outcome = Union[Interpreted, TimedOut, Malformed, TransportFailure]


# ═══════════════════════════════════════════════════════════════
#  PROMPTS
# ═══════════════════════════════════════════════════════════════

SYSTEM_PROMPT = """You are a perimenopause health interpreter. You receive one person's
tracked health data together with statistical correlations mined from it.
Your job is to make the numbers make sense for THIS person.

WHAT YOU DO:
- Explain why a correlation might exist (hormonal mechanisms, supplement
  timing, lifestyle interactions), not only that the data shows it
- Point out likely confounds or noise (small samples, coincidental timing)
- Resolve contradictions where one factor helps a symptom and hurts another
- Give specific recommendations grounded in this person's own data
- Take their stage, medications and habits into account

BACKGROUND:
- Estrogen swings affect sleep, mood, thermoregulation and cognition
- Falling progesterone affects sleep quality, anxiety and cycle regularity
- HRT helps vasomotor symptoms and can disturb sleep at first
- Vitamin D and B vitamins are stimulating; morning dosing suits sleep better
- Magnesium glycinate calms at night but can upset digestion
- Exercise helps mood and sleep over time; intense sessions can trigger hot flashes
- Alcohol causes vasodilation and fragments deep sleep
- Afternoon caffeine hits sleep harder in perimenopause
- Stress compounds everything, especially sleep and hot flashes
- A 1-2 day lag often points to a real mechanism; 5-7 days is more often chance
- Symptoms are often worse in the late luteal phase

CORRELATION QUALITY:
- fewer than 15 occurrences: early signal, needs more data
- 15-30 occurrences: your data suggests
- more than 30 occurrences: your data clearly shows
- effects under 20% may be noise, 20-40% are moderate, above 40% are strong
- lag 0 is same-day and could run either way

RULES:
1. Never diagnose or name a condition the person has
2. Never recommend starting or stopping a medication; suggest talking to their doctor
3. Say "correlation, not causation" for effects below 30%
4. Consider medication timing before blaming the medication
5. Warm, conversational tone
6. Personalise everything; no generic advice
7. dailyNarrative: 2 sentences, under 45 words
8. weeklyStory: 2-3 sentences, under 60 words
9. forecast: 1-2 sentences, under 40 words
10. insightNudge title at most 6 words, body at most 30 words

OUTPUT FORMAT:
Return ONLY a JSON object with exactly these top-level keys:
{
  "correlationInsights": [
    {"factor": "med_Vitamin D", "symptom": "sleep_disruption", "direction": "positive",
     "effectPp": 50, "explanation": "...", "mechanism": "...", "actionable": true,
     "recommendation": "...", "caveat": null, "confidenceLevel": "high"}
  ],
  "dailyNarrative": "...",
  "weeklyStory": "...",
  "forecast": "...",
  "insightNudge": {"title": "...", "body": "..."},
  "helpsHurts": {
    "helps": [{"factor": "exercised", "symptom": "mood_changes", "explanation": "...", "strength": 35}],
    "hurts": [{"factor": "alcohol", "symptom": "hot_flashes", "explanation": "...", "strength": 36}]
  },
  "contradictions": [
    {"factor": "...", "helpsSymptom": "...", "hurtsSymptom": "...", "explanation": "..."}
  ],
  "symptomGuidance": {
    "night_sweats": {"explanation": "...", "recommendations": ["..."], "relatedFactors": ["alcohol"]}
  }
}

Populate correlationInsights for every correlation in the input and fill
helpsHurts by direction. No markdown, no code fences: raw JSON only."""


def _label(name: str) -> str:
    return name.replace("_", " ")


def build_user_prompt(ctx: InsightContext) -> str:
    """Render the context as the markdown-ish user message."""
    parts = ["## Profile", f"Stage: {ctx.profile.stage or 'unknown'}"]
    if ctx.profile.date_of_birth:
        parts.append(f"DOB: {ctx.profile.date_of_birth}")
    if ctx.profile.symptoms:
        parts.append(f"Tracked symptoms: {', '.join(ctx.profile.symptoms)}")
    if ctx.profile.goals:
        parts.append(f"Goals: {', '.join(ctx.profile.goals)}")

    if ctx.medications:
        parts.append("\n## Current Medications")
        for med in ctx.medications:
            dose = f" {med.dose}" if med.dose else ""
            when = f" ({med.time})" if med.time else ""
            parts.append(f"- {med.name}{dose}{when}: {round(med.recent_adherence_pct)}% adherence")

    if ctx.cycle_data:
        parts.append("\n## Cycle Data")
        if ctx.cycle_data.stage:
            parts.append(f"Stage: {ctx.cycle_data.stage}")
        if ctx.cycle_data.avg_cycle_length:
            parts.append(f"Avg cycle: {ctx.cycle_data.avg_cycle_length:g} days")
        if ctx.cycle_data.recent_period_dates:
            parts.append(f"Recent period dates: {', '.join(ctx.cycle_data.recent_period_dates)}")

    if ctx.today:
        parts.append(f"\n## Today ({ctx.date})")
        if ctx.today.readiness is not None:
            parts.append(f"Readiness: {ctx.today.readiness}/100")
        if ctx.today.sleep_hours is not None:
            parts.append(f"Sleep: {ctx.today.sleep_hours:g}h")
        if ctx.today.mood is not None:
            parts.append(f"Mood: {ctx.today.mood}/5")
        if ctx.today.top_symptom:
            parts.append(f"Top symptom: {_label(ctx.today.top_symptom)}")

    if ctx.recent_scores:
        parts.append("\n## Recent 7-Day Scores")
        for s in ctx.recent_scores:
            parts.append(
                f"{s.date}: readiness={_or_q(s.readiness)}, "
                f"sleep={_or_q(s.sleep_score)}, symptoms={_or_q(s.symptom_load)}"
            )

    if ctx.recent_logs:
        parts.append(f"\n## Recent Log Highlights (last {len(ctx.recent_logs)} days)")
        for entry in ctx.recent_logs[:7]:
            symptoms = ", ".join(
                f"{_label(k)}({v:g})" for k, v in entry.symptoms.items() if v > 0
            )
            line = (
                f"{entry.date}: sleep={_or_q(entry.sleep_hours)}h, "
                f"quality={_or_q(entry.sleep_quality)}, mood={_or_q(entry.mood)}/5"
            )
            if symptoms:
                line += f", symptoms: {symptoms}"
            if entry.context_tags:
                line += f" | tags: {', '.join(entry.context_tags)}"
            parts.append(line)

    if ctx.correlations:
        parts.append("\n## Statistical Correlations (from tracking data)")
        for c in ctx.correlations:
            verb = "↑ increases" if c.direction == "positive" else "↓ reduces"
            lag = f" ({c.lag_days}-day lag)" if c.lag_days > 0 else " (same day)"
            parts.append(
                f"- {_label(c.factor_a)} {verb} {_label(c.factor_b)} by "
                f"{round(abs(c.effect_size_pct))}%{lag} [n={c.occurrences}]"
            )

    parts.append("\nAnalyse this data and return the insight JSON.")
    return "\n".join(parts)


def _or_q(value: Any) -> str:
    return "?" if value is None else f"{value:g}" if isinstance(value, float) else str(value)


# ═══════════════════════════════════════════════════════════════
#  PARSING
# ═══════════════════════════════════════════════════════════════

_FENCE_OPEN = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", cleaned))
    return cleaned.strip()


def parse_insight(reply: Union[str, Dict[str, Any]]) -> Insight:
    """Strict parse of a reply into a budget-enforced ``Insight``.

    Raises ``MalformedInsightError`` for non-JSON text, a non-object top
    level, or a payload whose fields have the wrong types.
    """
    if isinstance(reply, dict):
        payload: Any = reply
    else:
        cleaned = strip_code_fences(str(reply))
        try:
            payload = json.loads(cleaned)
        except ValueError as e:
            log.error("Reply is not JSON (first 500 chars): %s", cleaned[:500])
            raise MalformedInsightError(f"reply is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedInsightError(
            f"top-level JSON must be an object, got {type(payload).__name__}"
        )

    try:
        insight = Insight.model_validate(fill_missing_keys(payload))
    except ValidationError as e:
        raise MalformedInsightError(
            f"insight failed schema validation ({e.error_count()} errors)"
        ) from e
    return enforce_budgets(insight)


# ═══════════════════════════════════════════════════════════════
#  CLIENT
# ═══════════════════════════════════════════════════════════════

@dataclass
class ReasoningReply:
    content: Union[str, Dict[str, Any]]
    input_tokens: int = 0
    output_tokens: int = 0


class CrewAIReasoningClient:
    """One system+user round trip through a crewai ``LLM``.

    A fresh ``LLM`` is built per call so token usage is per request. The
    call goes through ``LLM.acall`` on the event loop, so no worker thread
    is held while waiting on the service. Its request timeout matches the
    pipeline deadline so a call abandoned by the timeout race still ends
    on its own.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        temperature: float = 0.4,
        max_tokens: int = 2500,
    ):
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _build_llm(self) -> LLM:
        return LLM(
            model=self.model,
            api_key=self.api_key,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )

    async def complete(self, system: str, prompt: str) -> ReasoningReply:
        llm = self._build_llm()
        try:
            content = await llm.acall([
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ])
        except Exception as e:
            raise ReasoningTransportError(f"{type(e).__name__}: {e}") from e

        usage = llm.get_token_usage_summary() if hasattr(llm, "get_token_usage_summary") else None
        return ReasoningReply(
            content=content,
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )


# ═══════════════════════════════════════════════════════════════
#  ADAPTER
# ═══════════════════════════════════════════════════════════════

def _discard_late_result(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning("Late reasoning failure after timeout (discarded): %r", exc)
    else:
        log.info("Late reasoning reply after timeout (discarded)")


class ReasoningAdapter:
    """Context in, ``Insight`` out.

    ``client.complete(system, prompt)`` must be a coroutine returning a
    ``ReasoningReply``.
    """

    def __init__(self, client, model_name: str = DEFAULT_MODEL):
        self.client = client
        self.model_name = model_name

    async def interpret(self, ctx: InsightContext) -> Interpreted:
        started = time.monotonic()
        reply = await self.client.complete(SYSTEM_PROMPT, build_user_prompt(ctx))
        latency_ms = int((time.monotonic() - started) * 1000)
        insight = parse_insight(reply.content)
        return Interpreted(
            insight=insight,
            input_tokens=reply.input_tokens,
            output_tokens=reply.output_tokens,
            latency_ms=latency_ms,
            model=self.model_name,
        )

    async def interpret_within(self, ctx: InsightContext, timeout: float) -> Outcome:
        """Race ``interpret`` against ``timeout`` seconds.

        The call starts on the event loop as soon as the task is created, so
        the deadline covers the call itself. It is not cancelled when the
        deadline wins; its late result or error is logged and dropped.
        """
        task = asyncio.ensure_future(self.interpret(ctx))
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            task.add_done_callback(_discard_late_result)
            log.warning("   %s: reasoning timed out after %.1fs", ctx.user_id, timeout)
            return TimedOut(timeout_s=timeout)

        try:
            return task.result()
        except MalformedInsightError as e:
            log.warning("   %s: malformed reasoning reply: %s", ctx.user_id, e)
            return Malformed(error=str(e))
        except ReasoningError as e:
            log.warning("   %s: reasoning transport failure: %s", ctx.user_id, e)
            return TransportFailure(error=str(e))
        except Exception as e:
            log.warning("   %s: reasoning client raised %r", ctx.user_id, e)
            return TransportFailure(error=f"{type(e).__name__}: {e}")
