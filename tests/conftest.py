"""Pytest fixtures for tdeecoach tests."""

from __future__ import annotations

import tempfile
from datetime import date, datetime, time, timedelta
from pathlib import Path

import pytest

from tdeecoach.config.settings import Settings
from tdeecoach.db.connection import DatabaseConnection
from tdeecoach.tracking.models import GoalType, IntakeEntry, UserProfile, WeightObservation
from tdeecoach.tracking.queries import IntakeQueries, WeightQueries
from tdeecoach.tracking.recalculation import MetabolicService

# A Monday, so weeks line up with calendar weeks
HISTORY_START = date(2024, 1, 1)
HISTORY_DAYS = 21
SKIPPED_DAY_INDEX = 10


@pytest.fixture
def temp_db():
    """Create a temporary database with schema."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    db = DatabaseConnection(db_path)
    db.initialize_schema()

    yield db

    # Cleanup
    db_path.unlink(missing_ok=True)


@pytest.fixture
def settings(temp_db) -> Settings:
    s = Settings()
    s.database.path = temp_db.db_path
    return s


@pytest.fixture
def service(temp_db, settings) -> MetabolicService:
    return MetabolicService(temp_db, settings)


@pytest.fixture
def profile() -> UserProfile:
    """34-year-old male, 180 cm, losing 0.5 kg/week."""
    return UserProfile(
        user_id=None,
        height_cm=180.0,
        birth_date=date(1990, 1, 1),
        sex="male",
        goal_type=GoalType.LOSE,
        goal_rate_kg_per_week=0.5,
        target_weight_kg=75.0,
    )


@pytest.fixture
def user_id(service, profile) -> int:
    return service.create_profile(profile)


def history_weight(i: int) -> float:
    """Slow downward drift with alternating water noise."""
    return round(80.0 - 0.05 * i + (0.3 if i % 2 else -0.3), 2)


def history_calories(i: int) -> float:
    return 2000.0 + (i % 3) * 150


@pytest.fixture
def history(temp_db, user_id) -> date:
    """
    Three weeks of weigh-ins and meals starting HISTORY_START.

    Every day has a morning weigh-in and two meals, except day index
    SKIPPED_DAY_INDEX which has no meals. Returns the last day.
    """
    with temp_db.get_connection() as conn:
        for i in range(HISTORY_DAYS):
            day = HISTORY_START + timedelta(days=i)
            WeightQueries.add_observation(
                conn,
                user_id,
                WeightObservation(history_weight(i), datetime.combine(day, time(7, 0))),
            )
            if i == SKIPPED_DAY_INDEX:
                continue
            calories = history_calories(i)
            for hour, share in ((12, 0.4), (19, 0.6)):
                IntakeQueries.add_entry(
                    conn,
                    user_id,
                    IntakeEntry(
                        entry_id=None,
                        eaten_at=datetime.combine(day, time(hour, 0)),
                        calories=calories * share,
                        protein_g=40.0,
                        carbs_g=90.0,
                        fat_g=25.0,
                    ),
                )
    return HISTORY_START + timedelta(days=HISTORY_DAYS - 1)
