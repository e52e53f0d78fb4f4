"""
trendlines.py — Attribute trendlines for resident, class and program.

- Period labels ("PGY-1 Fall", "PGY-2 Spring", "PGY-3") are placed on an
  ordinal axis; labels that cannot be placed are left out
- One least-squares line per attribute and scope
- Cohort (class / program) period averages are computed from raw
  EQ/PQ/IQ score details with pandas
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd

from core.errors import MalformedPeriodLabel
from core.regression import Trendline, linear_regression, trend_direction
from core.series import training_year_from_label

logger = logging.getLogger(__name__)

SCOPES = ("resident", "class", "program")

# Nested score detail keys → flat attribute keys
SCORE_KEY_MAP: Dict[str, Dict[str, str]] = {
    "eq": {
        "empathy": "eq_empathy",
        "adaptability": "eq_adaptability",
        "stress_mgmt": "eq_stress_mgmt",
        "curiosity": "eq_curiosity",
        "communication": "eq_communication",
    },
    "pq": {
        "work_ethic": "pq_work_ethic",
        "integrity": "pq_integrity",
        "teachability": "pq_teachability",
        "documentation": "pq_documentation",
        "leadership": "pq_leadership",
    },
    "iq": {
        "knowledge": "iq_knowledge",
        "analytical": "iq_analytical",
        "learning": "iq_learning",
        "flexibility": "iq_flexibility",
        "performance": "iq_performance",
    },
}

ATTRIBUTE_KEYS = [key for group in SCORE_KEY_MAP.values() for key in group.values()]

_PERIOD_RE = re.compile(r"^\s*(?:pgy[\s\-_]*)?(\d+)(?:\s+(fall|spring))?\s*$", re.IGNORECASE)
_TERM_RE = re.compile(r"\b(fall|spring)\b", re.IGNORECASE)

PointsLike = Union[Sequence[Tuple[str, float]], Sequence[Dict[str, Any]]]


# ── Period ordering ─────────────────────────────────────────────────

class PeriodOrdering:
    """
    Maps period labels to x positions.

    By default "PGY-N Fall" → (N−1)·2 and "PGY-N Spring" → (N−1)·2 + 1; a
    label with no semester counts as Fall. Any other label the score
    normalizer accepts ("Year 2", "R2 Spring") falls back to its digit rule
    for the training year. A configured canonical list replaces all of this
    with list position.
    """

    def __init__(self, canonical_labels: Optional[Sequence[str]] = None):
        self.canonical_labels = list(canonical_labels) if canonical_labels else None
        self._positions = (
            {self._key(label): i for i, label in enumerate(self.canonical_labels)}
            if self.canonical_labels else None
        )

    @staticmethod
    def _key(label: str) -> str:
        return " ".join(str(label).lower().replace("-", " ").split())

    def index(self, label: Any) -> Optional[int]:
        if label is None:
            return None
        if self._positions is not None:
            return self._positions.get(self._key(label))
        text = str(label)
        m = _PERIOD_RE.match(text)
        if m:
            pgy, term = int(m.group(1)), m.group(2)
        else:
            try:
                pgy = training_year_from_label(label)
            except MalformedPeriodLabel:
                return None
            t = _TERM_RE.search(text)
            term = t.group(1) if t else None
        if pgy < 1:
            return None
        semester = 1 if (term or "").lower() == "spring" else 0
        return (pgy - 1) * 2 + semester

    def sort(self, labels: Iterable[str]) -> List[str]:
        """Placeable labels in axis order."""
        placed = [(self.index(label), label) for label in labels]
        return [label for idx, label in sorted((p for p in placed if p[0] is not None), key=lambda p: p[0])]


# ── Series ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TrendlineSeries:
    owner_scope: str
    attribute_key: str
    points: Tuple[Tuple[str, float], ...]

    def placed(self, ordering: PeriodOrdering) -> List[Tuple[int, float]]:
        xy = []
        for label, score in self.points:
            x = ordering.index(label)
            if x is None:
                logger.debug(
                    "Omitting %s/%s point with unrecognised period label %r",
                    self.owner_scope, self.attribute_key, label,
                )
                continue
            xy.append((x, float(score)))
        xy.sort(key=lambda p: p[0])
        return xy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_scope": self.owner_scope,
            "attribute_key": self.attribute_key,
            "points": [{"period": label, "score": score} for label, score in self.points],
        }


def _as_points(raw: PointsLike) -> Tuple[Tuple[str, float], ...]:
    points = []
    for p in raw or []:
        if isinstance(p, dict):
            label = p.get("period", p.get("period_label"))
            score = p.get("score", p.get("avg_score"))
        else:
            label, score = p
        try:
            value = float(score)
        except (TypeError, ValueError):
            continue
        if pd.isna(value):
            continue
        points.append((str(label), value))
    return tuple(points)


def flatten_attribute_scores(scores_detail: Optional[Dict[str, Any]]) -> Dict[str, float]:
    """{'eq': {'empathy': 4.1, ...}, ...} → {'eq_empathy': 4.1, ...}; non-numeric values dropped."""
    flat: Dict[str, float] = {}
    if not scores_detail:
        return flat
    for category, attr_map in SCORE_KEY_MAP.items():
        category_scores = scores_detail.get(category)
        if not isinstance(category_scores, dict):
            continue
        for score_key, attr_key in attr_map.items():
            score = category_scores.get(score_key)
            if isinstance(score, bool) or not isinstance(score, (int, float)) or pd.isna(score):
                continue
            flat[attr_key] = float(score)
    return flat


def resident_attribute_points(period_scores: Iterable[Dict[str, Any]]) -> Dict[str, List[Tuple[str, float]]]:
    """Per-attribute (period, score) lists from a resident's period score rows."""
    out: Dict[str, List[Tuple[str, float]]] = {}
    for row in period_scores:
        detail = row.get("ai_scores_detail", row.get("scores_detail"))
        for attr_key, score in flatten_attribute_scores(detail).items():
            out.setdefault(attr_key, []).append((row.get("period_label"), score))
    return out


# ── Trendlines ──────────────────────────────────────────────────────

def fit_series(series: TrendlineSeries, ordering: PeriodOrdering, min_points: int = 1) -> Optional[Trendline]:
    xy = series.placed(ordering)
    if len(xy) < max(1, min_points):
        return None
    return linear_regression(xy)


def build_trendlines(
    resident: Dict[str, PointsLike],
    class_: Optional[Dict[str, PointsLike]] = None,
    program: Optional[Dict[str, PointsLike]] = None,
    ordering: Optional[PeriodOrdering] = None,
    min_points: int = 1,
) -> Dict[str, Dict[str, Optional[Trendline]]]:
    """
    {attribute_key: {"resident": Trendline | None, "class": ..., "program": ...}}

    Each input maps attribute keys to (period_label, score) points, either as
    tuples or as {"period", "score"} dicts. A scope with no placeable point
    (or fewer than ``min_points``) gets None.
    """
    ordering = ordering or PeriodOrdering()
    by_scope = {"resident": resident or {}, "class": class_ or {}, "program": program or {}}
    attributes = sorted({key for data in by_scope.values() for key in data})

    result: Dict[str, Dict[str, Optional[Trendline]]] = {}
    for attr in attributes:
        result[attr] = {}
        for scope in SCOPES:
            series = TrendlineSeries(scope, attr, _as_points(by_scope[scope].get(attr, [])))
            result[attr][scope] = fit_series(series, ordering, min_points)
    return result


def trendlines_to_dict(trendlines: Dict[str, Dict[str, Optional[Trendline]]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for attr, scopes in trendlines.items():
        out[attr] = {}
        for scope, line in scopes.items():
            if line is None:
                out[attr][scope] = None
                continue
            entry = line.to_dict()
            entry["direction"] = trend_direction(line.slope)
            out[attr][scope] = entry
    return out


# ── Cohort averages ─────────────────────────────────────────────────

def cohort_period_averages(
    records: Iterable[Dict[str, Any]],
    scope: str = "program",
    class_year: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Average attribute scores per period for the program or per class.

    Each record is one period score row: resident_id, period_label,
    class_year and the nested ai_scores_detail. Rows of residents with no
    class year only count toward the program average.
    """
    if scope not in ("class", "program"):
        raise ValueError(f"Unknown cohort scope '{scope}'")

    rows = []
    for r in records:
        for attr_key, score in flatten_attribute_scores(r.get("ai_scores_detail", r.get("scores_detail"))).items():
            rows.append({
                "resident_id": r.get("resident_id"),
                "class_year": r.get("class_year"),
                "period_label": r.get("period_label"),
                "attribute_key": attr_key,
                "score": score,
            })
    df = pd.DataFrame(rows, columns=["resident_id", "class_year", "period_label", "attribute_key", "score"])
    if df.empty:
        return []

    if scope == "class":
        df = df[df["class_year"].notna()]
        if class_year is not None:
            df = df[df["class_year"].astype(int) == int(class_year)]
        if df.empty:
            return []
        df = df.assign(scope_id=df["class_year"].astype(int).astype(str))
    else:
        df = df.assign(scope_id="")

    grouped = (
        df.groupby(["scope_id", "period_label", "attribute_key"])["score"]
        .agg(["mean", "count"])
        .reset_index()
    )

    return [
        {
            "scope_type": scope,
            "scope_id": row["scope_id"] or None,
            "period_label": row["period_label"],
            "attribute_key": row["attribute_key"],
            "avg_score": round(float(row["mean"]), 2),
            "n_residents": int(row["count"]),
        }
        for _, row in grouped.iterrows()
    ]


def averages_to_points(averages: Iterable[Dict[str, Any]]) -> Dict[str, List[Tuple[str, float]]]:
    """Cohort average rows → per-attribute (period, score) points for build_trendlines."""
    out: Dict[str, List[Tuple[str, float]]] = {}
    for row in averages:
        out.setdefault(row["attribute_key"], []).append((row["period_label"], row["avg_score"]))
    return out
