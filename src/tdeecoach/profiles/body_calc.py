"""Population-formula energy expenditure.

Used only for the cold-start period, before enough intake and weight
history exists to back-solve TDEE. Uses the Mifflin-St Jeor equation for
BMR, which is widely validated for estimating resting metabolic rate.
"""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Optional


class Sex(Enum):
    """Biological sex for BMR calculation."""
    MALE = "male"
    FEMALE = "female"


class ActivityLevel(Enum):
    """Activity level multipliers for TDEE calculation."""
    SEDENTARY = "sedentary"          # Little or no exercise
    LIGHT = "light"                  # Light exercise 1-3 days/week
    MODERATE = "moderate"            # Moderate exercise 3-5 days/week
    ACTIVE = "active"                # Hard exercise 6-7 days/week
    VERY_ACTIVE = "very_active"      # Very hard exercise, physical job


# Activity level multipliers (Harris-Benedict activity factors)
ACTIVITY_MULTIPLIERS = {
    ActivityLevel.SEDENTARY: 1.2,
    ActivityLevel.LIGHT: 1.375,
    ActivityLevel.MODERATE: 1.55,
    ActivityLevel.ACTIVE: 1.725,
    ActivityLevel.VERY_ACTIVE: 1.9,
}

# Cold start assumes moderate activity
DEFAULT_ACTIVITY_MULTIPLIER = ACTIVITY_MULTIPLIERS[ActivityLevel.MODERATE]

# Athletes run 10-12% above formula (organ and muscle mass hypertrophy)
ATHLETE_MULTIPLIER = 1.10


def calculate_bmr(
    age: int,
    sex: Sex,
    height_cm: float,
    weight_kg: float,
) -> float:
    """Calculate Basal Metabolic Rate using Mifflin-St Jeor equation.

    Args:
        age: Age in years
        sex: Biological sex
        height_cm: Height in centimetres
        weight_kg: Weight in kilograms

    Returns:
        BMR in calories per day
    """
    base = (10 * weight_kg) + (6.25 * height_cm) - (5 * age)
    if sex == Sex.MALE:
        return base + 5
    return base - 161


def calculate_age(birth_date: date, on: Optional[date] = None) -> int:
    """Age in whole years on a given day (default today)."""
    on = on or date.today()
    age = on.year - birth_date.year
    if (on.month, on.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age
