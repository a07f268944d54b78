"""Small numeric helpers shared by the estimators."""

from __future__ import annotations

import math
from typing import Sequence

import numpy as np


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from negative infinity.

    Python's built-in ``round`` uses banker's rounding (2228.5 -> 2228);
    kcal values are rounded the conventional way (2228.5 -> 2229).
    """
    return int(math.floor(value + 0.5))


def population_variance(values: Sequence[float]) -> float:
    """Population variance, 0.0 for fewer than two values."""
    if len(values) < 2:
        return 0.0
    return float(np.var(np.asarray(values, dtype=float)))
