"""
Shared constants used across multiple modules.
Single source of truth for factor tag categories and correlation gates.
"""

# Context tags that mark a day-level factor (matched case-insensitively)
EXERCISE_TAGS = ("exercise", "workout")
STRESS_TAGS = ("stress", "stressful")
SOCIAL_TAGS = ("social", "friends", "family")

# Sleep thresholds (hours)
SHORT_SLEEP_HOURS = 6
LONG_SLEEP_HOURS = 7

MED_FACTOR_PREFIX = "med_"

# Bleeding event types that count as a period date
PERIOD_EVENT_TYPES = ("period_start", "period_daily", "period_end")

# Cross-correlation search
CANDIDATE_LAGS = (0, 1, 2, 3, 5, 7)
MIN_OCCURRENCES = 5
MIN_CONFIDENCE = 0.6
# Baseline rate above which effect size is relative, otherwise absolute pp
BASELINE_SWITCH_RATE = 0.05
