"""
errors.py — Exception taxonomy for the trajectory engine.

Input validation failures (bad period labels, duplicate years, empty
regression input) are raised straight back to the caller. Catalog and
classifier invariant errors signal a bug and are logged before raising.
"Not enough data yet" is never an exception — it is a sentinel result.
"""

from typing import Any, Optional


class TrajectoryError(Exception):
    """Base class for every error raised by the engine."""


# ── Normalizer ──────────────────────────────────────────────────────

class NormalizationError(TrajectoryError, ValueError):
    """Raw exam records could not be turned into a score series."""


class MalformedPeriodLabel(NormalizationError):
    def __init__(self, label: Any, reason: str = "no digit found"):
        self.label = label
        super().__init__(f"Cannot read a training year from period label {label!r}: {reason}.")


class DuplicateYearError(NormalizationError):
    def __init__(self, year_index: int, labels=None):
        self.year_index = year_index
        self.labels = list(labels or [])
        detail = f" (labels: {', '.join(map(str, self.labels))})" if self.labels else ""
        super().__init__(
            f"More than one record maps to PGY-{year_index + 1}{detail}. "
            "Resolve duplicates before classification."
        )


class PercentileRangeError(NormalizationError):
    def __init__(self, value: float, label: Optional[Any] = None):
        self.value = value
        self.label = label
        where = f" for period {label!r}" if label is not None else ""
        super().__init__(f"Percentile {value}{where} is outside 0-100.")


# ── Regression ──────────────────────────────────────────────────────

class InsufficientDataError(TrajectoryError, ValueError):
    """Regression was asked to fit zero points."""


# ── Catalog / Classifier (programming errors) ───────────────────────

class UnknownArchetypeError(TrajectoryError, KeyError):
    def __init__(self, archetype_id: str, version: Optional[str] = None):
        self.archetype_id = archetype_id
        self.version = version
        suffix = f" in methodology {version}" if version else ""
        super().__init__(f"Unknown archetype id {archetype_id!r}{suffix}")

    def __str__(self) -> str:
        # KeyError quotes its message otherwise
        return self.args[0]


class InvalidSeriesError(TrajectoryError):
    """A score series reached the classifier out of order or with duplicates."""


class CatalogValidationError(TrajectoryError, ValueError):
    """An archetype catalog failed structural validation on load."""
