"""Back-solved TDEE estimation.

Instead of predicting expenditure from a population formula, each day is
asked "what TDEE would explain the observed trend weight change given what
was eaten?":

    raw_tdee = intake - weight_delta × energy_density

Single-day raw values are extremely volatile (1500 one day, 4000 the next),
so the published estimate is a heavily damped EMA of them:

    estimated_tdee = α_t × raw_tdee + (1 - α_t) × prev_estimated_tdee

α_t is 0.05 normally and 0.10 when step count jumps by more than 20%, so
the estimate reacts faster to genuine activity changes than to noise.

Energy density is asymmetric on purpose. Losing weight releases roughly
7700 kcal/kg (fat loss dominant); gaining stores tissue at a lower effective
5500 kcal/kg because synthesis is inefficient.

For the first days of a user's history TDEE is not back-solved at all:
Mifflin-St Jeor BMR × activity factor (+10% for athletes) is used instead.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Optional

from tdeecoach.profiles.body_calc import (
    ATHLETE_MULTIPLIER,
    DEFAULT_ACTIVITY_MULTIPLIER,
    Sex,
    calculate_age,
    calculate_bmr,
)
from tdeecoach.tracking.ema import calculate_weight_delta
from tdeecoach.tracking.models import (
    ComputedState,
    ConfidenceLevel,
    DailyRecord,
    UserProfile,
)
from tdeecoach.tracking.numeric import round_half_up

logger = logging.getLogger(__name__)

# TDEE EMA
TDEE_EMA_ALPHA = 0.05
TDEE_EMA_ALPHA_RESPONSIVE = 0.10

# Relative step increase that switches smoothing to responsive mode
STEP_RESPONSIVENESS_THRESHOLD = 0.20

# Energy density (kcal per kg of trend weight change)
ENERGY_DENSITY_DEFICIT = 7700
ENERGY_DENSITY_SURPLUS = 5500

# Days at the start of a history that use the population formula
COLD_START_DAYS = 7

# Flux range parameters (± kcal)
FLUX_BASE = 500
FLUX_FLOOR = 100
FLUX_NARROWING_PER_DAY = 20
FLUX_MISSING_DAY_FLOOR = 400


def select_energy_density(weight_delta_kg: float) -> int:
    """7700 kcal/kg when losing (delta < 0), 5500 kcal/kg otherwise."""
    if weight_delta_kg < 0:
        return ENERGY_DENSITY_DEFICIT
    return ENERGY_DENSITY_SURPLUS


def calculate_raw_tdee(intake_kcal: float, weight_delta_kg: float) -> tuple[int, int]:
    """
    Back-solve a single day's TDEE.

    Example: 2000 kcal eaten, trend down 0.1 kg
        2000 - (-0.1 × 7700) = 2770 kcal

    Returns:
        Tuple of (raw_tdee, energy_density_used)
    """
    density = select_energy_density(weight_delta_kg)
    raw = intake_kcal - weight_delta_kg * density
    return round_half_up(raw), density


def smooth_tdee(
    raw_tdee: float,
    prev_estimated_tdee: float,
    step_count_delta: Optional[float] = None,
    alpha: float = TDEE_EMA_ALPHA,
    responsive_alpha: float = TDEE_EMA_ALPHA_RESPONSIVE,
    step_threshold: float = STEP_RESPONSIVENESS_THRESHOLD,
) -> int:
    """
    Apply EMA smoothing to a raw TDEE value.

    Args:
        raw_tdee: Today's back-solved TDEE
        prev_estimated_tdee: Yesterday's smoothed TDEE
        step_count_delta: Relative change in step count vs yesterday (0.25 = +25%)

    Returns:
        Smoothed TDEE, rounded to whole kcal
    """
    if step_count_delta is not None and step_count_delta > step_threshold:
        logger.debug(
            "Step increase of %.0f%% detected, using responsive alpha %.2f",
            step_count_delta * 100,
            responsive_alpha,
        )
        alpha = responsive_alpha
    return round_half_up(alpha * raw_tdee + (1 - alpha) * prev_estimated_tdee)


def calculate_daily_expenditure(
    intake_kcal: float,
    weight_delta_kg: float,
    prev_estimated_tdee: float,
    step_count_delta: Optional[float] = None,
    alpha: float = TDEE_EMA_ALPHA,
    responsive_alpha: float = TDEE_EMA_ALPHA_RESPONSIVE,
    step_threshold: float = STEP_RESPONSIVENESS_THRESHOLD,
) -> tuple[int, int, int]:
    """
    Raw back-solve plus smoothing in one call.

    Returns:
        Tuple of (estimated_tdee, raw_tdee, energy_density_used)
    """
    raw, density = calculate_raw_tdee(intake_kcal, weight_delta_kg)
    estimated = smooth_tdee(
        raw, prev_estimated_tdee, step_count_delta, alpha, responsive_alpha, step_threshold
    )
    return estimated, raw, density


def relative_step_delta(
    steps_today: Optional[int], steps_yesterday: Optional[int]
) -> Optional[float]:
    """Relative step count change, or None when either day is unknown."""
    if steps_today is None or not steps_yesterday:
        return None
    return (steps_today - steps_yesterday) / steps_yesterday


# ============================================================================
# Cold start
# ============================================================================


def calculate_cold_start_tdee(
    profile: UserProfile,
    weight_kg: float,
    on: Optional[date] = None,
    activity_multiplier: float = DEFAULT_ACTIVITY_MULTIPLIER,
    athlete_multiplier: float = ATHLETE_MULTIPLIER,
) -> Optional[int]:
    """
    Population-formula TDEE for the cold-start period.

    Returns None when height, birth date or sex is missing; the caller must
    handle the unavailable case rather than assume a number.
    """
    if not profile.has_body_metrics:
        logger.debug("Profile %s lacks body metrics for cold start TDEE", profile.user_id)
        return None

    age = calculate_age(profile.birth_date, on)  # type: ignore[arg-type]
    bmr = calculate_bmr(age, Sex(profile.sex), profile.height_cm, weight_kg)  # type: ignore[arg-type]
    tdee = bmr * activity_multiplier
    if profile.athlete:
        tdee *= athlete_multiplier
    return round_half_up(tdee)


def is_cold_start_day(
    day_index: int,
    prior_tracked_days: Optional[int] = None,
    cold_start_days: int = COLD_START_DAYS,
) -> bool:
    """
    True while there is too little history to back-solve.

    That is the first ``cold_start_days`` days of history (1-based
    ``day_index``), and any later day until that many days before it were
    tracked.
    """
    if day_index <= cold_start_days:
        return True
    return prior_tracked_days is not None and prior_tracked_days < cold_start_days


# ============================================================================
# Confidence
# ============================================================================


def determine_confidence_level(
    days_tracked: int,
    recent_missing_days: int,
    cold_start_days: int = COLD_START_DAYS,
) -> ConfidenceLevel:
    """
    Confidence from history length and recent gaps.

    Args:
        days_tracked: Days with usable intake data so far
        recent_missing_days: Missing days among the trailing 7
    """
    if days_tracked < cold_start_days:
        return ConfidenceLevel.LEARNING
    if recent_missing_days > 3:
        return ConfidenceLevel.LOW
    if recent_missing_days > 1:
        return ConfidenceLevel.MEDIUM
    return ConfidenceLevel.HIGH


def calculate_flux_range(days_tracked: int, recent_variance: float = 0.0) -> int:
    """
    ± kcal uncertainty band around the TDEE estimate.

    Starts wide, narrows by 20 kcal per tracked day down to a 100 kcal
    floor, and widens again with noisy recent raw estimates.
    """
    base = max(FLUX_FLOOR, FLUX_BASE - FLUX_NARROWING_PER_DAY * days_tracked)
    return round_half_up(base + 0.5 * math.sqrt(max(recent_variance, 0.0)))


# ============================================================================
# Computed state
# ============================================================================


def build_computed_state(
    day: date,
    trend_weight_kg: float,
    prev_trend_weight_kg: float,
    record: Optional[DailyRecord],
    prev_estimated_tdee: int,
    step_count_delta: Optional[float] = None,
    days_tracked: int = 0,
    recent_variance: float = 0.0,
    backsolve_delta_kg: Optional[float] = None,
    alpha: float = TDEE_EMA_ALPHA,
    responsive_alpha: float = TDEE_EMA_ALPHA_RESPONSIVE,
    step_threshold: float = STEP_RESPONSIVENESS_THRESHOLD,
) -> ComputedState:
    """
    Build one day's ComputedState from its inputs and yesterday's estimate.

    A day with no record, untracked intake, or a skipped status holds the
    previous estimate as both raw and smoothed TDEE and widens the flux range
    to at least 400 kcal. Energy density is still recorded from the trend
    delta.

    Args:
        backsolve_delta_kg: Weight delta to back-solve with instead of the
            trend delta (used by whoosh dampening). The stored
            ``weight_delta_kg`` is always the trend delta.
    """
    weight_delta = calculate_weight_delta(trend_weight_kg, prev_trend_weight_kg)
    flux = calculate_flux_range(days_tracked, recent_variance)

    if record is None or not record.is_tracked:
        if record is not None and record.intake_calories is not None:
            logger.debug("Day %s marked as skipped, holding previous TDEE", day)
        return ComputedState(
            date=day,
            trend_weight_kg=trend_weight_kg,
            estimated_tdee_kcal=prev_estimated_tdee,
            raw_tdee_kcal=prev_estimated_tdee,
            flux_confidence_range=max(FLUX_MISSING_DAY_FLOOR, flux),
            energy_density_used=select_energy_density(weight_delta),
            weight_delta_kg=weight_delta,
        )

    delta_for_backsolve = weight_delta if backsolve_delta_kg is None else backsolve_delta_kg
    estimated, raw, density = calculate_daily_expenditure(
        record.intake_calories,  # type: ignore[arg-type]
        delta_for_backsolve,
        prev_estimated_tdee,
        step_count_delta,
        alpha,
        responsive_alpha,
        step_threshold,
    )
    logger.debug(
        "%s: intake=%s delta=%.3fkg raw=%d smoothed=%d density=%d",
        day,
        record.intake_calories,
        delta_for_backsolve,
        raw,
        estimated,
        density,
    )
    return ComputedState(
        date=day,
        trend_weight_kg=trend_weight_kg,
        estimated_tdee_kcal=estimated,
        raw_tdee_kcal=raw,
        flux_confidence_range=flux,
        energy_density_used=density,
        weight_delta_kg=weight_delta,
    )


def build_cold_start_state(
    day: date,
    trend_weight_kg: float,
    prev_trend_weight_kg: float,
    cold_start_tdee: int,
    days_tracked: int = 0,
) -> ComputedState:
    """ComputedState for a cold-start day: formula TDEE, never back-solved."""
    weight_delta = calculate_weight_delta(trend_weight_kg, prev_trend_weight_kg)
    return ComputedState(
        date=day,
        trend_weight_kg=trend_weight_kg,
        estimated_tdee_kcal=cold_start_tdee,
        raw_tdee_kcal=cold_start_tdee,
        flux_confidence_range=calculate_flux_range(days_tracked),
        energy_density_used=select_energy_density(weight_delta),
        weight_delta_kg=weight_delta,
    )
