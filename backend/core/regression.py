"""
regression.py — Ordinary least-squares trendlines.

Closed-form fit (Σx, Σy, Σxy, Σx²) over equally weighted points:
    slope     = (n·Σxy − Σx·Σy) / (n·Σx² − (Σx)²)
    intercept = (Σy − slope·Σx) / n

No rounding happens here; presentation code rounds.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Tuple

import numpy as np

from core.errors import InsufficientDataError


@dataclass(frozen=True)
class Trendline:
    slope: float
    intercept: float
    r2: float
    n_points: int

    def get_y(self, x: float) -> float:
        return self.slope * x + self.intercept

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slope": self.slope,
            "intercept": self.intercept,
            "r2": self.r2,
            "n_points": self.n_points,
        }


def linear_regression(points: Iterable[Tuple[float, float]]) -> Trendline:
    """
    Fit y = slope·x + intercept.

    A single point yields a flat line through it; callers decide whether
    that is enough to present as a trend.
    """
    pts = list(points)
    n = len(pts)
    if n == 0:
        raise InsufficientDataError("Linear regression needs at least one point.")

    x = np.array([p[0] for p in pts], dtype=np.float64)
    y = np.array([p[1] for p in pts], dtype=np.float64)

    if n == 1:
        return Trendline(slope=0.0, intercept=float(y[0]), r2=1.0, n_points=1)

    sum_x = float(np.sum(x))
    sum_y = float(np.sum(y))
    sum_xy = float(np.sum(x * y))
    sum_x2 = float(np.sum(x * x))

    denominator = n * sum_x2 - sum_x * sum_x
    if denominator == 0:
        # every x identical
        return Trendline(slope=0.0, intercept=sum_y / n, r2=0.0, n_points=n)

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n

    predicted = slope * x + intercept
    ss_tot = float(np.sum((y - sum_y / n) ** 2))
    ss_res = float(np.sum((y - predicted) ** 2))
    r2 = 1.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot

    return Trendline(
        slope=slope,
        intercept=intercept,
        r2=max(0.0, min(1.0, r2)),
        n_points=n,
    )


def trend_direction(slope: float, threshold: float = 0.1) -> str:
    """Classify a slope as 'improving', 'declining' or 'stable'."""
    if slope > threshold:
        return "improving"
    if slope < -threshold:
        return "declining"
    return "stable"
