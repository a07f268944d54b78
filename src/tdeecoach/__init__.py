"""Adaptive TDEE estimation and weekly calorie coaching."""

__version__ = "0.1.0"
