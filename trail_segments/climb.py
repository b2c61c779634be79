"""Climb categorisation for new segments.

Points = elevation gain (m) x distance (km) x grade factor. The grade factor
is injectable; the default scales with steepness. Categories: 0 = HC (320+),
1 (160+), 2 (80+), 3 (40+), 4 (20+), otherwise uncategorised.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence, Tuple

from .config import CLIMB_GRADE_FACTOR_MODE, CLIMB_MIN_GAIN_M

GradeFactor = Callable[[float], float]

# (minimum points, category) from hardest to easiest.
CATEGORY_THRESHOLDS: Sequence[Tuple[float, int]] = (
    (320.0, 0),
    (160.0, 1),
    (80.0, 2),
    (40.0, 3),
    (20.0, 4),
)

CATEGORY_LABELS = {0: "HC", 1: "Cat 1", 2: "Cat 2", 3: "Cat 3", 4: "Cat 4"}


def steepness_grade_factor(average_grade_pct: float) -> float:
    """1 on the flat, growing by 1 per 10% of average grade."""

    return 1.0 + abs(average_grade_pct) / 10.0


def flat_grade_factor(_average_grade_pct: float) -> float:
    return 1.0


_FACTORS = {
    "steepness": steepness_grade_factor,
    "flat": flat_grade_factor,
}


class ClimbCategorizer:
    """Turns segment stats into a climb category.

    ``grade_factor=None`` disables categorisation entirely.
    """

    def __init__(
        self,
        grade_factor: Optional[GradeFactor] = steepness_grade_factor,
        *,
        min_gain_m: float = CLIMB_MIN_GAIN_M,
        thresholds: Sequence[Tuple[float, int]] = CATEGORY_THRESHOLDS,
    ) -> None:
        self.grade_factor = grade_factor
        self.min_gain_m = min_gain_m
        self.thresholds = sorted(thresholds, reverse=True)

    @classmethod
    def from_config(cls, mode: str = CLIMB_GRADE_FACTOR_MODE) -> "ClimbCategorizer":
        normalized = (mode or "").strip().lower()
        if normalized in {"off", "none", ""}:
            return cls(grade_factor=None)
        try:
            return cls(grade_factor=_FACTORS[normalized])
        except KeyError:
            raise ValueError(f"Unknown climb grade factor mode: {mode!r}") from None

    def points(
        self, elevation_gain_m: float, distance_m: float, average_grade_pct: float
    ) -> Optional[float]:
        if self.grade_factor is None:
            return None
        return elevation_gain_m * (distance_m / 1000.0) * self.grade_factor(average_grade_pct)

    def categorize(
        self,
        elevation_gain_m: Optional[float],
        distance_m: float,
        average_grade_pct: Optional[float],
    ) -> Optional[int]:
        if elevation_gain_m is None or average_grade_pct is None:
            return None
        if elevation_gain_m < self.min_gain_m or average_grade_pct <= 0:
            return None
        score = self.points(elevation_gain_m, distance_m, average_grade_pct)
        if score is None:
            return None
        for minimum, category in self.thresholds:
            if score >= minimum:
                return category
        return None


__all__ = [
    "CATEGORY_LABELS",
    "CATEGORY_THRESHOLDS",
    "ClimbCategorizer",
    "GradeFactor",
    "flat_grade_factor",
    "steepness_grade_factor",
]
