"""Anomaly handling around TDEE estimation.

Covers:
1. Partial logging detection (a forgotten dinner looks like a huge deficit)
2. Whoosh protection (single-day water retention/release swings)
3. Goal transitions (immediate TEF and NEAT shift when switching goals)
4. Data quality scoring and outlier diagnostics
5. Boundary validation of raw weight and calorie entries

Everything here is diagnostic or dampening. Nothing raises for well-typed
numeric input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from tdeecoach.tracking.models import (
    MAX_WEIGHT_KG,
    MIN_WEIGHT_KG,
    ComputedState,
    DailyRecord,
    GoalType,
    LogStatus,
    UserProfile,
)
from tdeecoach.tracking.numeric import round_half_up

logger = logging.getLogger(__name__)

# Partial logging: below 50% of TDEE, or below 500 kcal outright
PARTIAL_LOGGING_THRESHOLD = 0.5
MINIMUM_VALID_CALORIES = 500

# Whoosh detection (kg)
WHOOSH_DIVERGENCE_THRESHOLD = 0.3
MAX_CREDIBLE_DAILY_CHANGE = 0.5
EXTREME_CHANGE_THRESHOLD = 1.5

# Fraction of the scale change allowed into back-solving, by severity
WHOOSH_DAMPING = {
    "extreme": 0.3,
    "moderate": 0.5,
    "mild": 0.7,
}

# 4% TDEE shift per 0.25 kg/week of effective rate change
TRANSITION_PERCENT_PER_STEP = 0.04
TRANSITION_RATE_STEP = 0.25

# Outlier threshold in standard deviations
OUTLIER_Z_SCORE = 2.0

# Day-over-day scale change that earns a warning (kg)
LARGE_DAILY_CHANGE_KG = 3.0

MAX_CALORIES_PER_DAY = 10000


@dataclass(frozen=True)
class PartialLoggingCheck:
    is_partial: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class WhooshCheck:
    is_whoosh: bool
    severity: Optional[str] = None  # 'mild', 'moderate', 'extreme'


@dataclass(frozen=True)
class GoalTransition:
    adjusted_tdee: int
    adjustment: float
    reason: str


@dataclass
class DataQualityReport:
    score: int
    issues: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class OutlierCheck:
    is_outlier: bool
    deviation: float
    z_score: float


@dataclass(frozen=True)
class TdeeStatistics:
    average: float
    std_dev: float
    minimum: float
    maximum: float


@dataclass(frozen=True)
class EntryValidation:
    is_valid: bool
    warning: Optional[str] = None


# ============================================================================
# Partial logging
# ============================================================================


def is_partial_logging(
    logged_calories: Optional[int],
    estimated_tdee: float,
) -> PartialLoggingCheck:
    """
    Detect an incomplete food log.

    ``None`` is untracked and ``0`` is an explicit fast; neither is partial.
    Anything else below ``max(500, 0.5 × TDEE)`` is.
    """
    if logged_calories is None or logged_calories == 0:
        return PartialLoggingCheck(False)

    if logged_calories < MINIMUM_VALID_CALORIES:
        return PartialLoggingCheck(
            True, f"Only {logged_calories} kcal logged - likely incomplete"
        )

    threshold = estimated_tdee * PARTIAL_LOGGING_THRESHOLD
    if logged_calories < threshold:
        return PartialLoggingCheck(
            True,
            f"{logged_calories} kcal is less than 50% of your "
            f"{round_half_up(estimated_tdee)} kcal TDEE",
        )

    return PartialLoggingCheck(False)


def validate_daily_record_for_tdee(
    record: DailyRecord, estimated_tdee: float
) -> EntryValidation:
    """Whether a day's record is trustworthy enough for back-solving."""
    if record.intake_calories is None:
        return EntryValidation(False, "No nutrition data logged")

    partial = is_partial_logging(record.intake_calories, estimated_tdee)
    if partial.is_partial:
        return EntryValidation(False, partial.reason)

    if record.status == LogStatus.SKIPPED:
        return EntryValidation(False, "Day marked as skipped")

    return EntryValidation(True)


# ============================================================================
# Whoosh protection
# ============================================================================


def detect_whoosh(scale_change_kg: float, trend_change_kg: float) -> WhooshCheck:
    """
    Classify a scale/trend divergence as a water-weight whoosh.

    A whoosh needs the scale change to exceed the trend change by at least
    0.3 kg. Severity follows the absolute scale change: >= 1.5 kg extreme,
    >= 0.5 kg moderate, otherwise mild.
    """
    abs_scale = abs(scale_change_kg)
    divergence = abs_scale - abs(trend_change_kg)

    if divergence < WHOOSH_DIVERGENCE_THRESHOLD:
        return WhooshCheck(False)
    if abs_scale >= EXTREME_CHANGE_THRESHOLD:
        return WhooshCheck(True, "extreme")
    if abs_scale >= MAX_CREDIBLE_DAILY_CHANGE:
        return WhooshCheck(True, "moderate")
    return WhooshCheck(True, "mild")


def dampen_whoosh(scale_change_kg: float, trend_change_kg: float) -> float:
    """
    Weight delta to back-solve with on a possible whoosh day.

    Without a whoosh the (already smoothed) trend delta is returned. With one,
    only 30/50/70% of the scale change is let through for
    extreme/moderate/mild severity.
    """
    check = detect_whoosh(scale_change_kg, trend_change_kg)
    if not check.is_whoosh:
        return trend_change_kg

    factor = WHOOSH_DAMPING[check.severity]  # type: ignore[index]
    damped = scale_change_kg * factor
    logger.debug(
        "Whoosh detected (%s): dampening delta from %.3f to %.3f",
        check.severity,
        scale_change_kg,
        damped,
    )
    return damped


# ============================================================================
# Goal transitions
# ============================================================================


def effective_rate(goal_type: GoalType, rate: float) -> float:
    """Signed weekly rate: negative for lose, positive for gain, 0 for maintain."""
    if goal_type == GoalType.LOSE:
        return -rate
    if goal_type == GoalType.GAIN:
        return rate
    return 0.0


def calculate_goal_transition_adjustment(
    current_tdee: int,
    old_goal_type: GoalType,
    new_goal_type: GoalType,
    old_rate: float,
    new_rate: float,
) -> GoalTransition:
    """
    Jump-start TDEE when the goal changes instead of waiting out the EMA lag.

    The shift is 4% of TDEE per 0.25 kg/week of effective rate change:
    lose 0.5 -> gain 0.25 is +0.75 kg/week, i.e. +12%.
    """
    if old_goal_type == new_goal_type and old_rate == new_rate:
        return GoalTransition(current_tdee, 0.0, "No goal change detected")

    rate_change = effective_rate(new_goal_type, new_rate) - effective_rate(
        old_goal_type, old_rate
    )
    fraction = (rate_change / TRANSITION_RATE_STEP) * TRANSITION_PERCENT_PER_STEP
    adjustment = current_tdee * fraction
    adjusted = round_half_up(current_tdee + adjustment)

    transition = f"transition from {old_goal_type.value} to {new_goal_type.value}"
    if adjustment > 0:
        reason = f"TDEE increased by {round_half_up(adjustment)} kcal for {transition}"
    elif adjustment < 0:
        reason = f"TDEE decreased by {round_half_up(abs(adjustment))} kcal for {transition}"
    else:
        reason = "No TDEE adjustment needed"

    logger.debug("Goal transition: %s", reason)
    return GoalTransition(adjusted, adjustment, reason)


def detect_goal_transition(
    previous: Optional[UserProfile], current: UserProfile
) -> Optional[str]:
    """Describe a goal change between two profile versions, or None."""
    if previous is None:
        return None

    if previous.goal_type != current.goal_type:
        return (
            f"Goal changed from {previous.goal_type.value} "
            f"to {current.goal_type.value}"
        )

    if (
        previous.goal_rate_kg_per_week != current.goal_rate_kg_per_week
        and current.goal_type != GoalType.MAINTAIN
    ):
        return (
            f"Rate changed from {previous.goal_rate_kg_per_week} "
            f"to {current.goal_rate_kg_per_week} kg/week"
        )

    return None


# ============================================================================
# Data quality
# ============================================================================


def calculate_data_quality_score(
    records: Sequence[DailyRecord],
    estimated_tdee: float,
) -> DataQualityReport:
    """
    Score a span of daily records from 0 to 100.

    Penalties: low completion rate (up to -40), partial logging (up to -30),
    sparse weigh-ins (up to -30), suspiciously uniform intake (-10).
    """
    if not records:
        return DataQualityReport(0, ["No daily logs provided"])

    issues: list[str] = []
    score = 100
    total = len(records)

    complete_rate = sum(1 for r in records if r.status == LogStatus.COMPLETE) / total
    if complete_rate < 0.5:
        score -= 40
        issues.append(f"Only {round_half_up(complete_rate * 100)}% of days logged completely")
    elif complete_rate < 0.7:
        score -= 20
        issues.append(f"{round_half_up(complete_rate * 100)}% of days logged completely")
    elif complete_rate < 0.85:
        score -= 10

    partial_days = sum(
        1
        for r in records
        if is_partial_logging(r.intake_calories, estimated_tdee).is_partial
    )
    partial_rate = partial_days / total
    if partial_rate > 0.3:
        score -= 30
        issues.append(f"{partial_days} days appear to have incomplete logging")
    elif partial_rate > 0.15:
        score -= 15
        issues.append(f"{partial_days} days may have incomplete logging")

    weight_rate = sum(1 for r in records if r.scale_weight_kg is not None) / total
    if weight_rate < 0.3:
        score -= 30
        issues.append("Very few weight measurements available")
    elif weight_rate < 0.5:
        score -= 15
        issues.append("Weight measured less than half the days")

    calories = np.array(
        [r.intake_calories for r in records if r.intake_calories is not None],
        dtype=float,
    )
    if len(calories) >= 5 and calories.mean() > 0:
        cv = calories.std() / calories.mean()
        if cv < 0.05:
            score -= 10
            issues.append(
                "Calorie intake appears unusually consistent - ensure accurate logging"
            )

    return DataQualityReport(max(0, min(100, score)), issues)


# ============================================================================
# Outliers
# ============================================================================


def is_tdee_outlier(
    raw_tdee: float, recent_average: float, std_dev: float
) -> OutlierCheck:
    """Flag a raw TDEE more than 2 standard deviations from the recent mean."""
    deviation = abs(raw_tdee - recent_average)
    z_score = deviation / std_dev if std_dev > 0 else 0.0
    is_outlier = z_score > OUTLIER_Z_SCORE
    if is_outlier:
        logger.debug(
            "TDEE outlier: %s vs avg %.0f (z=%.2f)", raw_tdee, recent_average, z_score
        )
    return OutlierCheck(is_outlier, deviation, z_score)


def calculate_tdee_statistics(states: Sequence[ComputedState]) -> TdeeStatistics:
    """Mean, population std, min and max of estimated TDEE."""
    if not states:
        return TdeeStatistics(0.0, 0.0, 0.0, 0.0)
    values = np.array([s.estimated_tdee_kcal for s in states], dtype=float)
    return TdeeStatistics(
        average=float(values.mean()),
        std_dev=float(values.std()),
        minimum=float(values.min()),
        maximum=float(values.max()),
    )


# ============================================================================
# Entry validation
# ============================================================================


def validate_weight_entry(
    weight_kg: float, previous_weight_kg: Optional[float] = None
) -> EntryValidation:
    """Hard 30-300 kg bound plus a warning on >3 kg day-over-day change."""
    if not MIN_WEIGHT_KG <= weight_kg <= MAX_WEIGHT_KG:
        return EntryValidation(
            False,
            f"Weight outside reasonable range "
            f"({MIN_WEIGHT_KG:.0f}-{MAX_WEIGHT_KG:.0f} kg)",
        )

    if previous_weight_kg is not None:
        change = abs(weight_kg - previous_weight_kg)
        if change > LARGE_DAILY_CHANGE_KG:
            return EntryValidation(
                True,
                f"Large weight change ({change:.1f} kg) - this may be water fluctuation",
            )

    return EntryValidation(True)


def validate_calorie_entry(calories: float, estimated_tdee: float) -> EntryValidation:
    """Hard 0-10000 kcal bound plus a warning above 2x TDEE."""
    if calories < 0:
        return EntryValidation(False, "Calories cannot be negative")
    if calories > MAX_CALORIES_PER_DAY:
        return EntryValidation(False, "Calorie value seems unreasonably high")
    if calories > estimated_tdee * 2:
        return EntryValidation(
            True,
            f"{calories:.0f} kcal is more than double your estimated TDEE - verify accuracy",
        )
    return EntryValidation(True)
