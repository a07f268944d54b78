"""The day-by-day TDEE chain as an explicit fold.

Each day's state depends on the previous day's trend weight and smoothed
TDEE, so the chain is a left fold over ascending dates with an explicit
accumulator. ``fold_day`` refuses to fold a day that is not exactly one
day after the accumulator's date; there is no way to compute a day out of
order.

Order of operations for one day:

1. Apply a goal transition dated today to the carried TDEE.
2. Inside the cold-start window (the first days of history, or until
   enough days have been tracked), use the population formula and stop.
   Back-solving is never reached for those days.
3. Otherwise back-solve from intake and weight delta (optionally
   whoosh-dampened) and smooth.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Mapping, Optional, Sequence

from tdeecoach.profiles.body_calc import ATHLETE_MULTIPLIER, DEFAULT_ACTIVITY_MULTIPLIER
from tdeecoach.tracking.edge_cases import (
    calculate_goal_transition_adjustment,
    dampen_whoosh,
)
from tdeecoach.tracking.expenditure import (
    COLD_START_DAYS,
    STEP_RESPONSIVENESS_THRESHOLD,
    TDEE_EMA_ALPHA,
    TDEE_EMA_ALPHA_RESPONSIVE,
    build_cold_start_state,
    build_computed_state,
    calculate_cold_start_tdee,
    calculate_weight_delta,
    is_cold_start_day,
    relative_step_delta,
)
from tdeecoach.tracking.models import (
    ComputedState,
    DailyRecord,
    GoalChange,
    TrendPoint,
    UserProfile,
)
from tdeecoach.tracking.numeric import population_variance

logger = logging.getLogger(__name__)

DEFAULT_SEED_TDEE = 2000
RECENT_WINDOW_DAYS = 7


class ChainOrderError(ValueError):
    """A day was folded out of sequence."""


@dataclass(frozen=True)
class ChainParameters:
    """Numeric knobs for the chain, normally built from settings."""

    tdee_alpha: float = TDEE_EMA_ALPHA
    tdee_alpha_responsive: float = TDEE_EMA_ALPHA_RESPONSIVE
    step_threshold: float = STEP_RESPONSIVENESS_THRESHOLD
    cold_start_days: int = COLD_START_DAYS
    activity_multiplier: float = DEFAULT_ACTIVITY_MULTIPLIER
    athlete_multiplier: float = ATHLETE_MULTIPLIER
    default_seed_tdee: int = DEFAULT_SEED_TDEE
    whoosh_protection: bool = False
    recent_window_days: int = RECENT_WINDOW_DAYS

    @classmethod
    def from_settings(cls, settings) -> "ChainParameters":
        m = settings.metabolic
        return cls(
            tdee_alpha=m.tdee_ema_alpha,
            tdee_alpha_responsive=m.tdee_ema_alpha_responsive,
            step_threshold=m.step_responsiveness_threshold,
            cold_start_days=m.cold_start_days,
            activity_multiplier=m.default_activity_multiplier,
            athlete_multiplier=m.athlete_multiplier,
            default_seed_tdee=m.default_seed_tdee,
            whoosh_protection=m.whoosh_protection,
            recent_window_days=m.recent_window_days,
        )


@dataclass(frozen=True)
class ChainAccumulator:
    """Everything the next day needs from the days before it."""

    date: date  # last day folded
    trend_weight_kg: float
    estimated_tdee_kcal: int
    scale_weight_kg: Optional[float] = None
    step_count: Optional[int] = None
    days_tracked: int = 0
    recent_raw_tdee: tuple[int, ...] = field(default_factory=tuple)


def initial_accumulator(
    first_point: TrendPoint,
    profile: Optional[UserProfile],
    params: ChainParameters = ChainParameters(),
) -> ChainAccumulator:
    """
    Accumulator for the (virtual) day before a history starts.

    Seeds TDEE from the population formula when the profile allows it,
    otherwise from ``params.default_seed_tdee``.
    """
    seed = None
    if profile is not None:
        seed = calculate_cold_start_tdee(
            profile,
            first_point.trend_weight_kg,
            on=first_point.date,
            activity_multiplier=params.activity_multiplier,
            athlete_multiplier=params.athlete_multiplier,
        )
    return ChainAccumulator(
        date=first_point.date - timedelta(days=1),
        trend_weight_kg=first_point.trend_weight_kg,
        estimated_tdee_kcal=seed if seed is not None else params.default_seed_tdee,
    )


def accumulator_from_history(
    prev_state: ComputedState,
    prior_states: Sequence[ComputedState],
    prev_record: Optional[DailyRecord],
    prev_scale_weight_kg: Optional[float],
    days_tracked: int,
    params: ChainParameters = ChainParameters(),
) -> ChainAccumulator:
    """
    Rebuild the accumulator from persisted history before a recompute.

    Args:
        prev_state: Stored state of the day before the recompute start
        prior_states: Stored states up to and including ``prev_state``
        prev_record: Daily record of that day, if any
        prev_scale_weight_kg: First scale reading of that day, if any
        days_tracked: Tracked days up to and including that day
    """
    window = sorted(prior_states, key=lambda s: s.date)[-params.recent_window_days:]
    return ChainAccumulator(
        date=prev_state.date,
        trend_weight_kg=prev_state.trend_weight_kg,
        estimated_tdee_kcal=prev_state.estimated_tdee_kcal,
        scale_weight_kg=prev_scale_weight_kg,
        step_count=prev_record.step_count if prev_record else None,
        days_tracked=days_tracked,
        recent_raw_tdee=tuple(s.raw_tdee_kcal for s in window),
    )


def fold_day(
    acc: ChainAccumulator,
    point: TrendPoint,
    record: Optional[DailyRecord],
    profile: Optional[UserProfile],
    history_start: date,
    params: ChainParameters = ChainParameters(),
    goal_change: Optional[GoalChange] = None,
) -> tuple[ComputedState, ChainAccumulator]:
    """
    Fold one day into the chain.

    Raises:
        ChainOrderError: ``point.date`` is not the day after ``acc.date``
    """
    expected = acc.date + timedelta(days=1)
    if point.date != expected:
        raise ChainOrderError(
            f"cannot compute {point.date}: chain is at {acc.date}, next day is {expected}"
        )

    prev_tdee = acc.estimated_tdee_kcal
    if goal_change is not None:
        prev_tdee = calculate_goal_transition_adjustment(
            prev_tdee,
            goal_change.old_goal_type,
            goal_change.new_goal_type,
            goal_change.old_rate,
            goal_change.new_rate,
        ).adjusted_tdee

    tracked_today = record is not None and record.is_tracked
    days_tracked = acc.days_tracked + (1 if tracked_today else 0)
    day_index = (point.date - history_start).days + 1

    if is_cold_start_day(day_index, acc.days_tracked, params.cold_start_days):
        cold_tdee = None
        if profile is not None:
            cold_tdee = calculate_cold_start_tdee(
                profile,
                point.trend_weight_kg,
                on=point.date,
                activity_multiplier=params.activity_multiplier,
                athlete_multiplier=params.athlete_multiplier,
            )
        state = build_cold_start_state(
            point.date,
            point.trend_weight_kg,
            acc.trend_weight_kg,
            cold_tdee if cold_tdee is not None else prev_tdee,
            days_tracked,
        )
    else:
        backsolve_delta = None
        if (
            params.whoosh_protection
            and point.scale_weight_kg is not None
            and acc.scale_weight_kg is not None
        ):
            backsolve_delta = dampen_whoosh(
                point.scale_weight_kg - acc.scale_weight_kg,
                calculate_weight_delta(point.trend_weight_kg, acc.trend_weight_kg),
            )

        state = build_computed_state(
            point.date,
            point.trend_weight_kg,
            acc.trend_weight_kg,
            record,
            prev_tdee,
            step_count_delta=relative_step_delta(
                record.step_count if record else None, acc.step_count
            ),
            days_tracked=days_tracked,
            recent_variance=population_variance(acc.recent_raw_tdee),
            backsolve_delta_kg=backsolve_delta,
            alpha=params.tdee_alpha,
            responsive_alpha=params.tdee_alpha_responsive,
            step_threshold=params.step_threshold,
        )

    recent = (acc.recent_raw_tdee + (state.raw_tdee_kcal,))[-params.recent_window_days:]
    next_acc = replace(
        acc,
        date=point.date,
        trend_weight_kg=point.trend_weight_kg,
        estimated_tdee_kcal=state.estimated_tdee_kcal,
        scale_weight_kg=point.scale_weight_kg,
        step_count=record.step_count if record else None,
        days_tracked=days_tracked,
        recent_raw_tdee=recent,
    )
    return state, next_acc


def compute_chain(
    points: Sequence[TrendPoint],
    records: Mapping[date, DailyRecord],
    profile: Optional[UserProfile],
    history_start: date,
    accumulator: Optional[ChainAccumulator] = None,
    params: ChainParameters = ChainParameters(),
    goal_changes: Optional[Mapping[date, GoalChange]] = None,
) -> list[ComputedState]:
    """
    Fold a run of consecutive trend points into ComputedStates.

    Pure and deterministic: the same inputs always give identical output.

    Args:
        points: Trend series, one point per consecutive day
        records: Daily records keyed by date (missing = untracked)
        profile: User profile for cold start, may be None
        history_start: First day of the user's history (day index 1)
        accumulator: State carried in from the day before ``points[0]``;
            seeded via ``initial_accumulator`` when None
        goal_changes: Goal transitions keyed by effective date
    """
    if not points:
        return []

    acc = accumulator or initial_accumulator(points[0], profile, params)
    goal_changes = goal_changes or {}

    states: list[ComputedState] = []
    for point in points:
        state, acc = fold_day(
            acc,
            point,
            records.get(point.date),
            profile,
            history_start,
            params,
            goal_changes.get(point.date),
        )
        states.append(state)

    logger.debug("Folded %d days (%s to %s)", len(states), points[0].date, points[-1].date)
    return states
