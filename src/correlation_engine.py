"""
Cross-Correlation Engine
========================
Mines per-day factor/symptom presence for lagged, directional,
confidence-scored relationships ("alcohol tends to increase hot flashes
two days later").

Pipeline per user:
  Layer 0 - Load:   daily logs + medication intake -> day vectors.
  Layer 1 - Frame:  day vectors laid on a continuous daily calendar as
            boolean factor / symptom matrices.  Gap days exist only so
            that shift(-lag) lands on the right calendar date; they are
            never counted as opportunities.
  Layer 2 - Search: for each lag in CANDIDATE_LAGS, count
            (factor present, symptom on D+lag) and the factor-absent
            baseline with two matrix products, then gate and score every
            pair.
  Layer 3 - Store:  full replace of the user's correlation rows.

Gates and effect-size rules:
  - occurrences >= 5 and occurrences / opportunities >= 0.6
  - baseline rate > 0.05  -> relative difference (%)
    baseline rate <= 0.05 -> absolute difference (percentage points)
  - the lag with the largest |effect| is kept (earliest lag on ties)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from constants import (
    BASELINE_SWITCH_RATE,
    CANDIDATE_LAGS,
    MIN_CONFIDENCE,
    MIN_OCCURRENCES,
)
from day_vectors import DayVector, build_day_vectors
from models import CorrelationRecord
from settings import CORRELATION_BATCH_SIZE, DEFAULT_MIN_LOG_DAYS
from store import HealthStore

log = logging.getLogger("correlation_engine")


# ═══════════════════════════════════════════════════════════════
#  PURE MATH
# ═══════════════════════════════════════════════════════════════

def effect_size_pct(rate_with: float, rate_without: float) -> float:
    """Relative % change over the baseline, or absolute pp when the
    baseline is near zero."""
    if rate_without > BASELINE_SWITCH_RATE:
        return (rate_with - rate_without) / rate_without * 100
    return (rate_with - rate_without) * 100


def _presence_frames(
    day_vectors: Dict[date, DayVector],
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.Series]:
    """Boolean (calendar x factor) and (calendar x symptom) frames plus a
    mask of the dates that were actually logged."""
    logged_dates = pd.to_datetime(sorted(day_vectors))
    calendar = pd.date_range(logged_dates.min(), logged_dates.max(), freq="D")

    factor_names = sorted({f for dv in day_vectors.values() for f in dv.factors})
    symptom_names = sorted({s for dv in day_vectors.values() for s in dv.symptoms})

    factors = pd.DataFrame(False, index=calendar, columns=factor_names)
    symptoms = pd.DataFrame(False, index=calendar, columns=symptom_names)
    for day, dv in day_vectors.items():
        ts = pd.Timestamp(day)
        if dv.factors:
            factors.loc[ts, sorted(dv.factors)] = True
        if dv.symptoms:
            symptoms.loc[ts, sorted(dv.symptoms)] = True

    logged = pd.Series(calendar.isin(logged_dates), index=calendar)
    return factors, symptoms, logged


def compute_cross_correlations(
    day_vectors: Dict[date, DayVector],
    user_id: str = "",
    lags: Tuple[int, ...] = CANDIDATE_LAGS,
    computed_at: Optional[datetime] = None,
) -> List[CorrelationRecord]:
    """Return one record per (factor, symptom) pair with a qualifying lag."""
    if not day_vectors:
        return []

    factors, symptoms, logged = _presence_frames(day_vectors)
    if factors.empty or symptoms.empty:
        return []

    logged_mask = logged.to_numpy()
    with_factor = factors.to_numpy(dtype=np.int64)
    without_factor = ((~factors.to_numpy()) & logged_mask[:, None]).astype(np.int64)

    opportunities = with_factor.sum(axis=0)
    days_without = without_factor.sum(axis=0)

    # counts[lag] -> (occurrences[f, s], symptom_without[f, s])
    counts: Dict[int, Tuple[np.ndarray, np.ndarray]] = {}
    for lag in lags:
        target = symptoms.shift(-lag, fill_value=False).to_numpy(dtype=np.int64)
        counts[lag] = (with_factor.T @ target, without_factor.T @ target)

    stamp = computed_at or datetime.utcnow()
    results: List[CorrelationRecord] = []

    for fi, factor in enumerate(factors.columns):
        total = int(opportunities[fi])
        if total == 0:
            continue
        n_without = int(days_without[fi])

        for si, symptom in enumerate(symptoms.columns):
            best: Optional[CorrelationRecord] = None
            best_abs = -np.inf

            for lag in lags:
                occ_matrix, base_matrix = counts[lag]
                occurrences = int(occ_matrix[fi, si])
                if occurrences < MIN_OCCURRENCES:
                    continue
                confidence = occurrences / total
                if confidence < MIN_CONFIDENCE:
                    continue

                rate_with = confidence
                rate_without = int(base_matrix[fi, si]) / n_without if n_without > 0 else 0.0
                effect = effect_size_pct(rate_with, rate_without)

                if abs(effect) > best_abs:
                    best_abs = abs(effect)
                    best = CorrelationRecord(
                        user_id=user_id,
                        factor_a=factor,
                        factor_b=symptom,
                        direction="positive" if rate_with > rate_without else "negative",
                        confidence=confidence,
                        effect_size_pct=float(effect),
                        occurrences=occurrences,
                        total_opportunities=total,
                        lag_days=lag,
                        computed_at=stamp,
                    )

            if best is not None:
                results.append(best)

    return results


# ═══════════════════════════════════════════════════════════════
#  ENGINE
# ═══════════════════════════════════════════════════════════════

class CorrelationEngine:
    """Runs the cross-correlation job against a ``HealthStore``."""

    def __init__(
        self,
        store: HealthStore,
        min_log_days: int = DEFAULT_MIN_LOG_DAYS,
        batch_size: int = CORRELATION_BATCH_SIZE,
    ):
        self.store = store
        self.min_log_days = min_log_days
        self.batch_size = batch_size

    async def compute_for_user(self, user_id: str) -> int:
        """Recompute and fully replace one user's correlations.

        Returns the number of records written.
        """
        log_rows, med_rows = await asyncio.gather(
            self.store.fetch_daily_logs(user_id),
            self.store.fetch_med_logs(user_id),
        )
        day_vectors = build_day_vectors(log_rows, med_rows)
        records = compute_cross_correlations(day_vectors, user_id=user_id)
        await self.store.replace_correlations(user_id, records)
        log.info(
            "   %s: %d day-vectors -> %d correlations",
            user_id, len(day_vectors), len(records),
        )
        return len(records)

    async def compute_all(self) -> Dict[str, int]:
        """Batch job over every eligible user.

        Returns {processed, skipped, errors}; users are handled in
        concurrent groups of ``batch_size`` and one failure never stops
        the rest.
        """
        user_ids = await self.store.list_eligible_user_ids(self.min_log_days)
        log.info(
            "Correlation engine - %d eligible users (>= %d log days)",
            len(user_ids), self.min_log_days,
        )

        processed = skipped = errors = 0
        for start in range(0, len(user_ids), self.batch_size):
            batch = user_ids[start:start + self.batch_size]
            results = await asyncio.gather(
                *(self.compute_for_user(uid) for uid in batch),
                return_exceptions=True,
            )
            for uid, result in zip(batch, results):
                if isinstance(result, BaseException):
                    log.error("Correlation run failed for user %s: %r", uid, result)
                    errors += 1
                elif result > 0:
                    processed += 1
                else:
                    skipped += 1

        log.info(
            "Correlation engine complete: processed=%d skipped=%d errors=%d",
            processed, skipped, errors,
        )
        return {"processed": processed, "skipped": skipped, "errors": errors}
