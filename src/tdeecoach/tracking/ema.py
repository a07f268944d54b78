"""Exponentially smoothed moving average for weight tracking.

Raw scale weight is noisy: water, gut contents and glycogen swing it by a
kilogram or more from one morning to the next. The trend weight is an EMA
of the scale readings and stands in for true tissue mass:

    T_n = α × W_n + (1 - α) × T_{n-1}

With α = 0.1 this behaves like a low-pass filter with a ~10 day time
constant. Days without a reading hold the trend; a missing measurement
never moves the series.

The batch routine walks a date range one calendar day at a time. Interior
gaps between two real readings are linearly interpolated before smoothing,
days outside the observed span simply hold the trend.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterable, Optional, Sequence

from tdeecoach.tracking.models import TrendPoint, WeightObservation

logger = logging.getLogger(__name__)

# Default smoothing factor (10%)
DEFAULT_SMOOTHING = 0.1

# Points compared by the weekly change calculation
WEEK_POINTS = 7


def update_trend(
    prev_trend: float,
    raw_weight: Optional[float],
    smoothing: float = DEFAULT_SMOOTHING,
) -> float:
    """
    Calculate the next trend value.

    Args:
        prev_trend: Previous day's trend weight (kg)
        raw_weight: Today's scale weight, or None if not weighed
        smoothing: Smoothing factor α, default 0.1

    Returns:
        Today's trend weight. Exactly ``prev_trend`` when ``raw_weight`` is None.

    Example:
        >>> update_trend(80.0, 79.0)
        79.9
        >>> update_trend(80.0, None)
        80.0
    """
    if raw_weight is None:
        return prev_trend
    return smoothing * raw_weight + (1 - smoothing) * prev_trend


def calculate_weight_delta(trend_today: float, trend_yesterday: float) -> float:
    """Trend weight change in kg (negative = losing), 3 decimal precision."""
    return round(trend_today - trend_yesterday, 3)


def interpolate_weight(
    start_weight: float,
    end_weight: float,
    start_date: date,
    end_date: date,
    target_date: date,
) -> float:
    """Linear interpolation between two dated weights."""
    total_days = (end_date - start_date).days
    if total_days == 0:
        return start_weight
    progress = (target_date - start_date).days / total_days
    return start_weight + (end_weight - start_weight) * progress


def first_weight_per_day(
    observations: Iterable[WeightObservation],
) -> dict[date, float]:
    """Map each calendar day to its earliest observation's weight."""
    by_day: dict[date, float] = {}
    for obs in sorted(observations, key=lambda o: o.observed_at):
        by_day.setdefault(obs.day, obs.weight_kg)
    return by_day


def _date_range(start_date: date, end_date: date) -> Iterable[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def interpolate_missing_weights(
    observations: Iterable[WeightObservation],
    start_date: date,
    end_date: date,
) -> dict[date, Optional[float]]:
    """
    Fill interior gaps between real readings.

    Returns one entry per day in [start_date, end_date]. Days with a reading
    keep it; days strictly between two readings get a linearly interpolated
    weight; days with no reading on one side are None (the trend will hold).
    """
    by_day = first_weight_per_day(observations)
    known_days = sorted(by_day)

    filled: dict[date, Optional[float]] = {}
    for day in _date_range(start_date, end_date):
        if day in by_day:
            filled[day] = by_day[day]
            continue

        prev_day = next((d for d in reversed(known_days) if d < day), None)
        next_day = next((d for d in known_days if d > day), None)
        if prev_day is not None and next_day is not None:
            filled[day] = interpolate_weight(
                by_day[prev_day], by_day[next_day], prev_day, next_day, day
            )
        else:
            filled[day] = None

    return filled


def calculate_trend_weights(
    observations: Sequence[WeightObservation],
    start_date: date,
    end_date: date,
    initial_trend: Optional[float] = None,
    smoothing: float = DEFAULT_SMOOTHING,
) -> list[TrendPoint]:
    """
    Calculate a daily trend weight series for a date range.

    The trend is seeded from ``initial_trend`` when given, otherwise from the
    first available observation. Exactly one point is produced per calendar
    day in range, in ascending date order.

    Args:
        observations: Weight observations, any order; the first per day is used
        start_date: First day of the series
        end_date: Last day of the series (inclusive)
        initial_trend: Trend weight of the day before ``start_date``, if known
        smoothing: EMA smoothing factor

    Returns:
        List of TrendPoint, empty if there is nothing to seed the trend from
    """
    if end_date < start_date:
        return []

    ordered = sorted(observations, key=lambda o: o.observed_at)
    if initial_trend is None:
        if not ordered:
            return []
        initial_trend = ordered[0].weight_kg

    scale_by_day = first_weight_per_day(ordered)
    filled = interpolate_missing_weights(ordered, start_date, end_date)

    trend = initial_trend
    points: list[TrendPoint] = []
    for day in _date_range(start_date, end_date):
        # carry the stored precision so a resumed series matches a full replay
        trend = round(update_trend(trend, filled[day], smoothing), 2)
        points.append(
            TrendPoint(
                date=day,
                scale_weight_kg=scale_by_day.get(day),
                trend_weight_kg=trend,
            )
        )

    logger.debug(
        "Calculated %d trend points from %d observations (%s to %s)",
        len(points),
        len(ordered),
        start_date,
        end_date,
    )
    return points


def get_weekly_weight_change(series: Sequence[TrendPoint]) -> Optional[float]:
    """
    Trend weight change across the trailing week of a series.

    Compares the last point with the first point of the trailing 7-point
    window. Returns None when fewer than 7 points exist.
    """
    if len(series) < WEEK_POINTS:
        return None
    change = series[-1].trend_weight_kg - series[-WEEK_POINTS].trend_weight_kg
    return round(change, 2)
