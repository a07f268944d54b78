"""Weight trend tracking and back-solved TDEE estimation.

Each day, intake and the change in trend weight are used to solve for the
energy expenditure that would explain them. The per-day values are smoothed
into a published estimate and summarized weekly into calorie targets.

Key components:
- EMA trend weight (10% smoothing, interior gaps interpolated)
- Back-solved TDEE with asymmetric energy density and a cold-start formula
- Edge-case guards: partial logging, water whooshes, goal transitions
- Weekly coaching: targets, adherence, maintenance soft landing
- Per-user serialized recompute of the day-by-day chain
"""

from __future__ import annotations

from tdeecoach.tracking.chain import ChainOrderError, ChainParameters, compute_chain
from tdeecoach.tracking.ema import calculate_trend_weights, update_trend
from tdeecoach.tracking.models import (
    ComputedState,
    DailyRecord,
    GoalType,
    LogStatus,
    UserProfile,
    WeeklyCheckIn,
    WeightObservation,
)
from tdeecoach.tracking.recalculation import MetabolicService, RecalculationError

__all__ = [
    "ChainOrderError",
    "ChainParameters",
    "ComputedState",
    "DailyRecord",
    "GoalType",
    "LogStatus",
    "MetabolicService",
    "RecalculationError",
    "UserProfile",
    "WeeklyCheckIn",
    "WeightObservation",
    "calculate_trend_weights",
    "compute_chain",
    "update_trend",
]
