"""Population formulas for body metrics."""
