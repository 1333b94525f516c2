"""
Availability probability for released spots.

The chance a released spot is still free decays with the minutes since it
became available. Peak hours (local time) use a steeper curve.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from app.core.timeutils import is_peak_hour


@dataclass(frozen=True)
class CurveBucket:
    min_minutes: float
    max_minutes: float
    max_probability: int
    min_probability: int


PEAK_CURVE: tuple[CurveBucket, ...] = (
    CurveBucket(0, 5, 100, 90),
    CurveBucket(5, 10, 89, 70),
    CurveBucket(10, 15, 69, 50),
    CurveBucket(15, 20, 49, 30),
    CurveBucket(20, 30, 29, 10),
)

OFF_PEAK_CURVE: tuple[CurveBucket, ...] = (
    CurveBucket(0, 15, 100, 90),
    CurveBucket(15, 30, 89, 75),
    CurveBucket(30, 60, 74, 55),
    CurveBucket(60, 90, 54, 30),
    CurveBucket(90, 120, 29, 10),
)

EXHAUSTED_PROBABILITY = 5


class ProbabilityLevel(str, Enum):
    VERY_HIGH = "very_high"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    VERY_LOW = "very_low"


def probability_from_curve(elapsed_minutes: float, curve: tuple[CurveBucket, ...]) -> int:
    """Linear interpolation inside the bucket that holds ``elapsed_minutes``"""
    if elapsed_minutes < 0:
        return 100

    for bucket in curve:
        if bucket.min_minutes <= elapsed_minutes < bucket.max_minutes:
            progress = (elapsed_minutes - bucket.min_minutes) / (bucket.max_minutes - bucket.min_minutes)
            spread = bucket.max_probability - bucket.min_probability
            return round(bucket.max_probability - progress * spread)

    return EXHAUSTED_PROBABILITY


def calculate_availability_probability(available_since: datetime, now: datetime) -> int:
    """Probability (5..100) that a spot available since ``available_since`` is still free at ``now``"""
    elapsed_minutes = (now - available_since).total_seconds() / 60
    curve = PEAK_CURVE if is_peak_hour(now) else OFF_PEAK_CURVE
    return probability_from_curve(elapsed_minutes, curve)


def probability_level(probability: int) -> ProbabilityLevel:
    if probability >= 90:
        return ProbabilityLevel.VERY_HIGH
    if probability >= 70:
        return ProbabilityLevel.HIGH
    if probability >= 50:
        return ProbabilityLevel.MEDIUM
    if probability >= 30:
        return ProbabilityLevel.LOW
    return ProbabilityLevel.VERY_LOW
