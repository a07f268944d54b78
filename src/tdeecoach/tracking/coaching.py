"""Weekly coaching: calorie targets, adherence and maintenance drift.

Targets move once a week, not daily; adjusting every day just chases noise.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional, Sequence

from tdeecoach.tracking.edge_cases import is_partial_logging
from tdeecoach.tracking.expenditure import (
    COLD_START_DAYS,
    ENERGY_DENSITY_DEFICIT,
    determine_confidence_level,
)
from tdeecoach.tracking.models import (
    ComputedState,
    DailyRecord,
    GoalType,
    LogStatus,
    UserProfile,
    WeeklyCheckIn,
)
from tdeecoach.tracking.numeric import round_half_up

logger = logging.getLogger(__name__)

# kcal/day per kg/week of goal rate (~1100)
KCAL_PER_KG_WEEKLY = ENERGY_DENSITY_DEFICIT / 7

MIN_CALORIES = 1200
MAX_CALORIES = 6000

MAINTENANCE_TOLERANCE_KG = 1.5
MICRO_ADJUSTMENT_KCAL = 150

DEFAULT_GOAL_RATE = 0.5
DAYS_PER_WEEK = 7


@dataclass(frozen=True)
class WeeklyEligibility:
    can_update: bool
    missing_days: int
    warning: Optional[str] = None


@dataclass(frozen=True)
class MaintenanceDrift:
    adjusted_calories: int
    status: str  # 'within', 'above', 'below'
    drift_kg: float


def calculate_goal_adjustment(
    goal_type: GoalType, rate_kg_per_week: float = DEFAULT_GOAL_RATE
) -> int:
    """Daily kcal deficit (negative) or surplus (positive) for a goal."""
    if goal_type == GoalType.LOSE:
        return -round_half_up(rate_kg_per_week * KCAL_PER_KG_WEEKLY)
    if goal_type == GoalType.GAIN:
        return round_half_up(rate_kg_per_week * KCAL_PER_KG_WEEKLY)
    return 0


def calculate_calorie_target(
    tdee: float,
    goal_type: GoalType,
    rate_kg_per_week: float = DEFAULT_GOAL_RATE,
    min_calories: int = MIN_CALORIES,
    max_calories: int = MAX_CALORIES,
) -> int:
    """TDEE plus goal adjustment, clamped to [1200, 6000]."""
    target = round_half_up(tdee + calculate_goal_adjustment(goal_type, rate_kg_per_week))
    return max(min_calories, min(max_calories, target))


def count_complete_days(records: Sequence[DailyRecord]) -> int:
    return sum(1 for r in records if r.is_complete)


def calculate_adherence_score(records: Sequence[DailyRecord]) -> float:
    """Fraction of the week's 7 days logged completely, in [0, 1]."""
    if not records:
        return 0.0
    score = round(count_complete_days(records) / DAYS_PER_WEEK, 2)
    return max(0.0, min(1.0, score))


def check_weekly_update_eligibility(
    records: Sequence[DailyRecord],
) -> WeeklyEligibility:
    """
    Decide whether a week has enough data to move the target.

    More than 3 missing days: hold the previous target. 2-3 missing days:
    update with low confidence. 0-1: update normally.
    """
    missing = max(0, DAYS_PER_WEEK - count_complete_days(records))
    if missing > 3:
        return WeeklyEligibility(
            False, missing, "Not enough data for weekly update. Keep previous targets."
        )
    if missing > 1:
        return WeeklyEligibility(
            True, missing, "Low confidence update due to missing data."
        )
    return WeeklyEligibility(True, missing)


def check_maintenance_drift(
    trend_weight_kg: float,
    target_weight_kg: float,
    tdee: int,
    tolerance_kg: float = MAINTENANCE_TOLERANCE_KG,
    micro_adjustment: int = MICRO_ADJUSTMENT_KCAL,
) -> MaintenanceDrift:
    """
    Soft landing for maintenance.

    Inside ±1.5 kg of target, eat at TDEE. Outside it, shift by a fixed
    150 kcal toward target regardless of how far off the trend is.
    """
    drift = trend_weight_kg - target_weight_kg

    if abs(drift) <= tolerance_kg:
        return MaintenanceDrift(tdee, "within", drift)

    if drift > 0:
        logger.debug("Drift +%.1f kg above target, applying micro-cut", drift)
        return MaintenanceDrift(tdee - micro_adjustment, "above", drift)

    logger.debug("Drift %.1f kg below target, applying micro-bulk", drift)
    return MaintenanceDrift(tdee + micro_adjustment, "below", drift)


def build_weekly_check_in(
    week_start: date,
    week_end: date,
    records: Sequence[DailyRecord],
    states: Sequence[ComputedState],
    profile: UserProfile,
    previous_suggested_calories: Optional[int] = None,
    days_tracked: Optional[int] = None,
    min_calories: int = MIN_CALORIES,
    max_calories: int = MAX_CALORIES,
    tolerance_kg: float = MAINTENANCE_TOLERANCE_KG,
    micro_adjustment: int = MICRO_ADJUSTMENT_KCAL,
    cold_start_days: int = COLD_START_DAYS,
) -> Optional[WeeklyCheckIn]:
    """
    Assemble a week's check-in.

    Returns None when the week has no daily records or no valid computed
    states; the caller reports that as insufficient data.

    Args:
        previous_suggested_calories: Last published target, held when the
            week is not eligible for an update
        days_tracked: Total tracked days in the user's history, for the
            confidence level (defaults to the number of states this week)
    """
    valid_states = sorted(
        (s for s in states if s.estimated_tdee_kcal > 0), key=lambda s: s.date
    )
    if not records or not valid_states:
        logger.info("No data for weekly check-in %s to %s", week_start, week_end)
        return None

    eligibility = check_weekly_update_eligibility(records)

    average_tdee = round_half_up(
        sum(s.estimated_tdee_kcal for s in valid_states) / len(valid_states)
    )
    trend_start = valid_states[0].trend_weight_kg
    trend_end = valid_states[-1].trend_weight_kg

    if profile.goal_type == GoalType.MAINTAIN and profile.target_weight_kg:
        suggested = check_maintenance_drift(
            trend_end, profile.target_weight_kg, average_tdee, tolerance_kg, micro_adjustment
        ).adjusted_calories
    else:
        suggested = calculate_calorie_target(
            average_tdee,
            profile.goal_type,
            profile.goal_rate_kg_per_week,
            min_calories,
            max_calories,
        )

    if not eligibility.can_update and previous_suggested_calories is not None:
        suggested = previous_suggested_calories

    if days_tracked is None:
        days_tracked = len(states)

    return WeeklyCheckIn(
        week_start=week_start,
        week_end=week_end,
        average_tdee=average_tdee,
        suggested_calories=suggested,
        adherence_score=calculate_adherence_score(records),
        confidence_level=determine_confidence_level(
            days_tracked, eligibility.missing_days, cold_start_days
        ),
        trend_weight_start=trend_start,
        trend_weight_end=trend_end,
        weekly_weight_change=round(trend_end - trend_start, 2),
        notes=eligibility.warning,
    )


def determine_log_status(record: DailyRecord, estimated_tdee: float) -> LogStatus:
    """Classify a day: untracked -> skipped, partial, or complete."""
    if record.intake_calories is None:
        return LogStatus.SKIPPED
    if is_partial_logging(record.intake_calories, estimated_tdee).is_partial:
        return LogStatus.PARTIAL
    return LogStatus.COMPLETE


def calculate_goal_progress(
    start_weight_kg: float, current_trend_kg: float, target_weight_kg: float
) -> int:
    """Percent of the way from start to target, capped to [0, 150]."""
    total = target_weight_kg - start_weight_kg
    if abs(total) < 0.1:
        return 100
    progress = (current_trend_kg - start_weight_kg) / total * 100
    return round_half_up(max(0.0, min(150.0, progress)))


def estimate_weeks_to_goal(
    current_trend_kg: float, target_weight_kg: float, weekly_change_kg: float
) -> Optional[int]:
    """Weeks remaining at the current rate, None if not heading toward target."""
    remaining = target_weight_kg - current_trend_kg
    if abs(remaining) < 0.1:
        return 0
    if weekly_change_kg == 0:
        return None
    if (remaining > 0) != (weekly_change_kg > 0):
        return None
    return round_half_up(abs(remaining / weekly_change_kg))


def get_week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())


def get_week_end(day: date) -> date:
    """Sunday of the week containing ``day``."""
    return get_week_start(day) + timedelta(days=6)
