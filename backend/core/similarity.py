"""
similarity.py — Similar historical residents.

Ranks a corpus of past residents by how closely their ITE trajectory
matches the subject's:
- Compared dimensions: percentiles on the years both have, plus the
  year-over-year deltas on consecutive years both have
- Weights: 0.6 across the percentiles, 0.4 across the deltas, renormalised
  when no delta is shared
- Similarity = 1 − 2 × weighted Euclidean distance (percentiles / 100),
  with a small bonus for sharing the archetype, clamped to [0, 1]
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.spatial import distance

from core.archetypes import ArchetypeCatalog
from core.classifier import AWAITING_DATA_ID, UNCLASSIFIED_ID, classify_series
from core.series import ScoreSeries, series_from_percentiles, series_from_points

logger = logging.getLogger(__name__)

PERCENTILE_WEIGHT = 0.6
DELTA_WEIGHT = 0.4
DEFAULT_LIMIT = 5
DEFAULT_THRESHOLD = 0.5
ARCHETYPE_MATCH_BONUS = 0.05


@dataclass(frozen=True)
class HistoricalResident:
    id: str
    name: str
    class_year: Optional[int]
    series: ScoreSeries
    archetype_id: Optional[str] = None
    archetype_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoricalResident":
        """
        Accepts either ``points`` ([{year_index, percentile}]) or the stored
        ``pgy1_percentile`` / ``pgy2_percentile`` / ``pgy3_percentile`` columns.
        """
        if data.get("points") is not None:
            series = series_from_points(data["points"])
        else:
            scores = data.get("scores") or data
            series = series_from_percentiles(
                scores.get("pgy1_percentile", scores.get("pgy1")),
                scores.get("pgy2_percentile", scores.get("pgy2")),
                scores.get("pgy3_percentile", scores.get("pgy3")),
            )
        class_year = data.get("class_year", data.get("graduation_year"))
        return cls(
            id=str(data.get("id") or data.get("resident_id")),
            name=str(data.get("name") or data.get("full_name") or ""),
            class_year=int(class_year) if class_year is not None else None,
            series=series,
            archetype_id=data.get("archetype_id"),
            archetype_name=data.get("archetype_name") or data.get("current_archetype"),
        )


@dataclass(frozen=True)
class SimilarResident:
    id: str
    name: str
    class_year: Optional[int]
    similarity_score: float
    score_series: ScoreSeries
    archetype_id: Optional[str] = None
    archetype_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "class_year": self.class_year,
            "similarity_score": round(self.similarity_score, 4),
            "score_series": self.score_series.to_list(),
            "scores": self.score_series.to_dict(),
            "archetype_id": self.archetype_id,
            "archetype_name": self.archetype_name,
        }


# ── Distance ────────────────────────────────────────────────────────

def _dimensions(a: ScoreSeries, b: ScoreSeries) -> Tuple[List[float], List[float], List[float]]:
    shared = sorted(set(a.year_indices) & set(b.year_indices))
    if not shared:
        return [], [], []

    u, v, w = [], [], []
    for year in shared:
        u.append(a.percentile_for(year))
        v.append(b.percentile_for(year))
        w.append(PERCENTILE_WEIGHT / len(shared))

    pairs = [y for y in shared if y + 1 in shared]
    for year in pairs:
        u.append(a.percentile_for(year + 1) - a.percentile_for(year))
        v.append(b.percentile_for(year + 1) - b.percentile_for(year))
        w.append(DELTA_WEIGHT / len(pairs))

    total = sum(w)
    return u, v, [x / total for x in w]


def trajectory_similarity(a: ScoreSeries, b: ScoreSeries) -> Optional[float]:
    """Similarity in [0, 1] before any archetype bonus; None with no shared year."""
    u, v, w = _dimensions(a, b)
    if not u:
        return None
    dist = distance.euclidean(np.array(u) / 100.0, np.array(v) / 100.0, w)
    return max(0.0, min(1.0, 1.0 - 2.0 * dist))


# ── Matching ────────────────────────────────────────────────────────

def _resolve_archetype(
    resident: HistoricalResident,
    catalog: ArchetypeCatalog,
) -> Tuple[Optional[str], Optional[str]]:
    if resident.archetype_id:
        return resident.archetype_id, resident.archetype_name
    if resident.archetype_name:
        definition = catalog.find_by_name(resident.archetype_name)
        return (definition.id if definition else None), resident.archetype_name
    classification = classify_series(resident.series, catalog)
    if classification.archetype_id in (AWAITING_DATA_ID, UNCLASSIFIED_ID):
        return None, None
    return classification.archetype_id, classification.archetype_name


def find_similar_residents(
    subject_id: str,
    series: ScoreSeries,
    corpus: Iterable[HistoricalResident],
    catalog: ArchetypeCatalog,
    limit: int = DEFAULT_LIMIT,
    threshold: float = DEFAULT_THRESHOLD,
    subject_archetype_id: Optional[str] = None,
    archetype_bonus: float = ARCHETYPE_MATCH_BONUS,
) -> List[SimilarResident]:
    """
    Top ``limit`` corpus residents whose similarity exceeds ``threshold``.

    The subject itself is never returned. Ties are broken by resident id so
    the ranking is stable.
    """
    if len(series) == 0:
        return []

    if subject_archetype_id is None:
        subject = classify_series(series, catalog)
        if subject.archetype_id not in (AWAITING_DATA_ID, UNCLASSIFIED_ID):
            subject_archetype_id = subject.archetype_id

    matches: List[SimilarResident] = []
    for resident in corpus:
        if resident.id == str(subject_id):
            continue
        score = trajectory_similarity(series, resident.series)
        if score is None:
            logger.debug("Skipping resident %s: no ITE year in common", resident.id)
            continue

        archetype_id, archetype_name = _resolve_archetype(resident, catalog)
        if subject_archetype_id and archetype_id == subject_archetype_id:
            score = min(1.0, score + archetype_bonus)
        if score <= threshold:
            continue

        matches.append(SimilarResident(
            id=resident.id,
            name=resident.name,
            class_year=resident.class_year,
            similarity_score=score,
            score_series=resident.series,
            archetype_id=archetype_id,
            archetype_name=archetype_name,
        ))

    matches.sort(key=lambda m: (-m.similarity_score, m.id))
    return matches[: max(0, limit)]
