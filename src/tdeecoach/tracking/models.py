"""Data models for weight tracking, TDEE estimation and weekly coaching.

All internal values are metric (kg, cm, kcal). Unit preference on the
profile is carried for display only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional


# Physically sane body weight range; anything outside is a data-entry error
MIN_WEIGHT_KG = 30.0
MAX_WEIGHT_KG = 300.0


class LogStatus(Enum):
    """Completion status of a day's food log."""
    COMPLETE = "complete"
    PARTIAL = "partial"
    SKIPPED = "skipped"


class GoalType(Enum):
    """Direction of the user's body weight goal."""
    LOSE = "lose"
    GAIN = "gain"
    MAINTAIN = "maintain"


class ConfidenceLevel(Enum):
    """How much the current TDEE estimate can be trusted."""
    LEARNING = "learning"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


def check_weight_kg(weight_kg: float) -> None:
    """Reject weights outside the physically sane range."""
    if not MIN_WEIGHT_KG <= weight_kg <= MAX_WEIGHT_KG:
        raise ValueError(
            f"weight must be between {MIN_WEIGHT_KG:.0f} and {MAX_WEIGHT_KG:.0f} kg, "
            f"got {weight_kg}"
        )


@dataclass(frozen=True)
class WeightObservation:
    """A single scale reading. Immutable once recorded."""

    weight_kg: float
    observed_at: datetime
    note: Optional[str] = None

    def __post_init__(self) -> None:
        check_weight_kg(self.weight_kg)

    @property
    def day(self) -> date:
        return self.observed_at.date()


@dataclass
class IntakeEntry:
    """A logged meal or food item that contributes to a day's intake."""

    entry_id: Optional[int]
    eaten_at: datetime
    calories: float
    protein_g: float = 0.0
    carbs_g: float = 0.0
    fat_g: float = 0.0
    description: Optional[str] = None

    def __post_init__(self) -> None:
        if self.calories < 0:
            raise ValueError(f"calories cannot be negative, got {self.calories}")
        for name in ("protein_g", "carbs_g", "fat_g"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative, got {getattr(self, name)}")


@dataclass
class DailyRecord:
    """Per-day input summary.

    ``intake_calories`` of ``None`` means the day was not tracked; ``0`` means
    the user deliberately fasted. The two are never interchangeable.
    """

    date: date
    scale_weight_kg: Optional[float] = None
    intake_calories: Optional[int] = None
    intake_protein_g: Optional[float] = None
    intake_carbs_g: Optional[float] = None
    intake_fat_g: Optional[float] = None
    step_count: Optional[int] = None
    status: LogStatus = LogStatus.SKIPPED
    user_override: bool = False  # status was set explicitly by the user

    def __post_init__(self) -> None:
        if isinstance(self.status, str):
            self.status = LogStatus(self.status)
        if self.scale_weight_kg is not None:
            check_weight_kg(self.scale_weight_kg)
        if self.intake_calories is not None and self.intake_calories < 0:
            raise ValueError(
                f"intake_calories cannot be negative, got {self.intake_calories}"
            )
        if self.step_count is not None and self.step_count < 0:
            raise ValueError(f"step_count cannot be negative, got {self.step_count}")

    @property
    def is_tracked(self) -> bool:
        """True when the day can feed TDEE back-solving."""
        return self.intake_calories is not None and self.status != LogStatus.SKIPPED

    @property
    def is_complete(self) -> bool:
        return self.status == LogStatus.COMPLETE and self.intake_calories is not None


@dataclass(frozen=True)
class ComputedState:
    """Derived per-day metabolic state. Never edited directly."""

    date: date
    trend_weight_kg: float
    estimated_tdee_kcal: int
    raw_tdee_kcal: int
    flux_confidence_range: int
    energy_density_used: int
    weight_delta_kg: float


@dataclass
class WeeklyCheckIn:
    """Weekly coaching summary built from a week of records and states."""

    week_start: date
    week_end: date
    average_tdee: int
    suggested_calories: int
    adherence_score: float
    confidence_level: ConfidenceLevel
    trend_weight_start: float
    trend_weight_end: float
    weekly_weight_change: float
    notes: Optional[str] = None

    def __post_init__(self) -> None:
        if isinstance(self.confidence_level, str):
            self.confidence_level = ConfidenceLevel(self.confidence_level)
        if not 0.0 <= self.adherence_score <= 1.0:
            raise ValueError(
                f"adherence_score must be in [0, 1], got {self.adherence_score}"
            )


@dataclass
class UserProfile:
    """User profile and goals. Read-only input to the engine."""

    user_id: Optional[int]
    height_cm: Optional[float] = None
    birth_date: Optional[date] = None
    sex: Optional[str] = None  # 'male' or 'female'
    athlete: bool = False
    goal_type: GoalType = GoalType.MAINTAIN
    goal_rate_kg_per_week: float = 0.5
    target_weight_kg: Optional[float] = None
    unit_preference: str = "metric"  # display only
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if isinstance(self.goal_type, str):
            self.goal_type = GoalType(self.goal_type)
        if self.sex is not None and self.sex not in ("male", "female"):
            raise ValueError(f"sex must be 'male' or 'female', got '{self.sex}'")
        if self.goal_rate_kg_per_week < 0:
            raise ValueError(
                f"goal_rate_kg_per_week cannot be negative, got {self.goal_rate_kg_per_week}"
            )
        if self.height_cm is not None and self.height_cm <= 0:
            raise ValueError(f"height_cm must be positive, got {self.height_cm}")
        if self.target_weight_kg is not None:
            check_weight_kg(self.target_weight_kg)
        if self.unit_preference not in ("metric", "imperial"):
            raise ValueError(
                f"unit_preference must be 'metric' or 'imperial', got '{self.unit_preference}'"
            )

    @property
    def has_body_metrics(self) -> bool:
        """True when the cold-start formula can be evaluated."""
        return (
            self.height_cm is not None
            and self.birth_date is not None
            and self.sex is not None
        )


@dataclass(frozen=True)
class GoalChange:
    """A dated switch of goal type and/or rate."""

    effective_date: date
    old_goal_type: GoalType
    old_rate: float
    new_goal_type: GoalType
    new_rate: float


@dataclass(frozen=True)
class TrendPoint:
    """One day of the smoothed weight series."""

    date: date
    scale_weight_kg: Optional[float]
    trend_weight_kg: float


@dataclass
class RecalculationSummary:
    """Outcome of a backfill or recompute-from run."""

    user_id: int
    start_date: Optional[date]
    end_date: Optional[date]
    days_aggregated: int = 0
    states: list[ComputedState] = field(default_factory=list)

    @property
    def days_recalculated(self) -> int:
        return len(self.states)
