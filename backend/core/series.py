"""
series.py — Score Series Normalizer.

Turns raw per-period ITE records into a canonical ScoreSeries:
- Training year read from free-form labels ("PGY-1", "pgy 2", "3")
- Rows without a usable percentile are dropped, never imputed
- Duplicate training years are rejected
- Output sorted ascending by year index (stable)
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd

from core.errors import (
    DuplicateYearError,
    MalformedPeriodLabel,
    NormalizationError,
    PercentileRangeError,
)

logger = logging.getLogger(__name__)

# Column name variations seen in exam exports
PERIOD_ALIASES = [
    "pgy_level", "pgy", "period_label", "period", "training_year",
    "year_label", "level", "year",
]
PERCENTILE_ALIASES = [
    "percentile", "ite_percentile", "percentile_rank", "pct", "percent",
]


# ── Data types ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class ScorePoint:
    year_index: int
    percentile: float

    @property
    def training_year(self) -> int:
        return self.year_index + 1

    def to_dict(self) -> Dict[str, Any]:
        return {"year_index": self.year_index, "percentile": self.percentile}


@dataclass(frozen=True)
class ScoreSeries:
    """Ordered ITE percentiles for one resident; missing years are simply absent."""

    points: Tuple[ScorePoint, ...] = ()

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self):
        return iter(self.points)

    @property
    def data_years(self) -> int:
        return len(self.points)

    @property
    def year_indices(self) -> List[int]:
        return [p.year_index for p in self.points]

    def percentile_for(self, year_index: int) -> Optional[float]:
        for p in self.points:
            if p.year_index == year_index:
                return p.percentile
        return None

    def is_well_formed(self) -> bool:
        years = self.year_indices
        return (
            all(a < b for a, b in zip(years, years[1:]))
            and all(y >= 0 for y in years)
            and all(0 <= p.percentile <= 100 for p in self.points)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {f"pgy{p.training_year}": p.percentile for p in self.points}

    def to_list(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self.points]


# ── Helpers ─────────────────────────────────────────────────────────

def _find_col(df: pd.DataFrame, aliases: List[str]) -> Optional[str]:
    """Find the first column matching any alias (case-insensitive)."""
    cols_lower = {str(c).lower().strip(): c for c in df.columns}
    for a in aliases:
        if a.lower() in cols_lower:
            return cols_lower[a.lower()]
    return None


def training_year_from_label(label: Any) -> int:
    """
    Extract the training year from a period label.

    Every non-digit character is stripped, so "PGY-2" and "2" both give 2.
    """
    if label is None or (isinstance(label, float) and pd.isna(label)):
        raise MalformedPeriodLabel(label, "label is empty")
    if isinstance(label, bool):
        raise MalformedPeriodLabel(label, "not a period label")
    if isinstance(label, int):
        year = label
    elif isinstance(label, float) and label.is_integer():
        year = int(label)
    else:
        digits = re.sub(r"\D", "", str(label))
        if not digits:
            raise MalformedPeriodLabel(label)
        year = int(digits)
    if year < 1:
        raise MalformedPeriodLabel(label, "training years start at 1")
    return year


def _to_frame(records: Union[pd.DataFrame, Iterable[Dict[str, Any]]]) -> pd.DataFrame:
    if isinstance(records, pd.DataFrame):
        return records.copy()
    return pd.DataFrame(list(records))


# ── Normalization ───────────────────────────────────────────────────

def normalize_score_records(
    records: Union[pd.DataFrame, Iterable[Dict[str, Any]]],
    period_col: Optional[str] = None,
    percentile_col: Optional[str] = None,
) -> ScoreSeries:
    """
    Build a ScoreSeries from raw exam records for a single resident.

    Records may be a DataFrame or a list of dicts; extra columns (raw score,
    test date, resident id) are ignored.
    """
    df = _to_frame(records)
    if df.empty:
        return ScoreSeries()

    period_col = period_col or _find_col(df, PERIOD_ALIASES)
    percentile_col = percentile_col or _find_col(df, PERCENTILE_ALIASES)
    if period_col is None or period_col not in df.columns:
        raise NormalizationError("No period label column found in exam records.")
    if percentile_col is None or percentile_col not in df.columns:
        raise NormalizationError("No percentile column found in exam records.")

    df["_percentile"] = pd.to_numeric(df[percentile_col], errors="coerce")
    dropped = int(df["_percentile"].isna().sum())
    if dropped:
        logger.debug("Dropped %d exam record(s) without a percentile", dropped)
    df = df[df["_percentile"].notna()]

    by_year: Dict[int, List[Tuple[Any, float]]] = {}
    for label, pct in zip(df[period_col].tolist(), df["_percentile"].tolist()):
        year_index = training_year_from_label(label) - 1
        value = float(pct)
        if value < 0 or value > 100:
            raise PercentileRangeError(value, label)
        by_year.setdefault(year_index, []).append((label, value))

    for year_index, entries in by_year.items():
        if len(entries) > 1:
            raise DuplicateYearError(year_index, [label for label, _ in entries])

    points = [ScorePoint(year_index, entries[0][1]) for year_index, entries in by_year.items()]
    points.sort(key=lambda p: p.year_index)
    return ScoreSeries(tuple(points))


def series_from_percentiles(
    pgy1: Optional[float] = None,
    pgy2: Optional[float] = None,
    pgy3: Optional[float] = None,
) -> ScoreSeries:
    """Series from the stored pgy1/pgy2/pgy3 percentile columns."""
    records = [
        {"pgy_level": year, "percentile": value}
        for year, value in ((1, pgy1), (2, pgy2), (3, pgy3))
        if value is not None
    ]
    return normalize_score_records(records)


def series_from_points(points: Iterable[Dict[str, Any]]) -> ScoreSeries:
    """Series from already-normalized {year_index, percentile} dicts."""
    records = [
        {"pgy_level": int(p["year_index"]) + 1, "percentile": p.get("percentile")}
        for p in points
    ]
    return normalize_score_records(records)
