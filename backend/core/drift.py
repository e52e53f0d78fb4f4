"""
drift.py — Version-drift tracking.

Compares a resident's persisted (original) classification with a fresh one:
- Drift exists when the archetype id changed
- The cause says why: more ITE years, a methodology version bump, both,
  or a revised score under the same years and version
- history_trigger names what prompted a recomputation, for the
  classification history log
- summarize_drift rolls many results up for a program-level report
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from core.archetypes import ArchetypeCatalog
from core.classifier import Alternative, Classification, classify_with_alternatives
from core.series import ScoreSeries


class DriftCause(str, Enum):
    NEW_DATA = "new_data"
    METHODOLOGY_CHANGE = "methodology_change"
    NEW_DATA_AND_METHODOLOGY = "new_data_and_methodology"
    SCORE_REVISION = "score_revision"


class HistoryTrigger(str, Enum):
    INITIAL = "initial"
    PGY2_SCORE_ADDED = "pgy2_score_added"
    PGY3_SCORE_ADDED = "pgy3_score_added"
    METHODOLOGY_UPDATE = "methodology_update"
    SCORE_REVISION = "score_revision"


@dataclass(frozen=True)
class DriftReason:
    cause: DriftCause
    new_data_years: int
    methodology_changed: bool
    original_version: str
    current_version: str
    original_data_years: int
    current_data_years: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cause": self.cause.value,
            "new_data_years": self.new_data_years,
            "methodology_changed": self.methodology_changed,
            "original_version": self.original_version,
            "current_version": self.current_version,
            "original_data_years": self.original_data_years,
            "current_data_years": self.current_data_years,
            "message": self.message,
        }


@dataclass(frozen=True)
class ClassificationResult:
    original_classification: Classification
    current_classification: Classification
    alternatives: List[Alternative] = field(default_factory=list)
    has_version_drift: bool = False
    drift_reason: Optional[DriftReason] = None
    history_entry: Optional[HistoryTrigger] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_classification": self.original_classification.to_dict(),
            "current_classification": self.current_classification.to_dict(),
            "alternatives": [a.to_dict() for a in self.alternatives],
            "has_version_drift": self.has_version_drift,
            "drift_reason": self.drift_reason.to_dict() if self.drift_reason else None,
            "history_entry": self.history_entry.value if self.history_entry else None,
        }


# ── Drift ───────────────────────────────────────────────────────────

def _drift_message(cause: DriftCause, original: Classification, current: Classification) -> str:
    change = f"{original.archetype_name} → {current.archetype_name}"
    added = current.data_years - original.data_years
    if cause == DriftCause.NEW_DATA:
        return f"{change}: {added} new ITE year(s) of data"
    if cause == DriftCause.METHODOLOGY_CHANGE:
        return f"{change}: methodology v{original.methodology_version} → v{current.methodology_version}"
    if cause == DriftCause.NEW_DATA_AND_METHODOLOGY:
        return (
            f"{change}: {added} new ITE year(s) of data and methodology "
            f"v{original.methodology_version} → v{current.methodology_version}"
        )
    return f"{change}: ITE score revised"


def detect_drift(
    original: Optional[Classification],
    current: Classification,
) -> Optional[DriftReason]:
    """
    Why the archetype changed since the original classification.

    Returns None when there is no original or the archetype id is the same.
    """
    if original is None or original.archetype_id == current.archetype_id:
        return None

    new_years = max(0, current.data_years - original.data_years)
    methodology_changed = original.methodology_version != current.methodology_version
    if new_years and methodology_changed:
        cause = DriftCause.NEW_DATA_AND_METHODOLOGY
    elif new_years:
        cause = DriftCause.NEW_DATA
    elif methodology_changed:
        cause = DriftCause.METHODOLOGY_CHANGE
    else:
        cause = DriftCause.SCORE_REVISION

    return DriftReason(
        cause=cause,
        new_data_years=new_years,
        methodology_changed=methodology_changed,
        original_version=original.methodology_version,
        current_version=current.methodology_version,
        original_data_years=original.data_years,
        current_data_years=current.data_years,
        message=_drift_message(cause, original, current),
    )


def history_trigger(
    previous: Optional[Classification],
    current: Classification,
) -> Optional[HistoryTrigger]:
    """What prompted a recomputation; None when nothing worth recording changed."""
    if previous is None:
        return HistoryTrigger.INITIAL
    if current.metrics.pgy2 is not None and previous.metrics.pgy2 is None:
        return HistoryTrigger.PGY2_SCORE_ADDED
    if current.metrics.pgy3 is not None and previous.metrics.pgy3 is None:
        return HistoryTrigger.PGY3_SCORE_ADDED
    if current.methodology_version != previous.methodology_version:
        return HistoryTrigger.METHODOLOGY_UPDATE
    if current.metrics != previous.metrics or current.archetype_id != previous.archetype_id:
        return HistoryTrigger.SCORE_REVISION
    return None


def classify_resident(
    series: ScoreSeries,
    catalog: ArchetypeCatalog,
    original: Optional[Classification] = None,
    previous: Optional[Classification] = None,
) -> ClassificationResult:
    """
    Classify a series and compare it with the resident's stored classifications.

    ``original`` is the first classification ever recorded (drift baseline);
    ``previous`` is the latest one (history trigger). With no original, the
    current classification is its own baseline.
    """
    current, alternatives = classify_with_alternatives(series, catalog)
    reason = detect_drift(original, current)
    return ClassificationResult(
        original_classification=original if original is not None else current,
        current_classification=current,
        alternatives=alternatives,
        has_version_drift=reason is not None,
        drift_reason=reason,
        history_entry=history_trigger(previous, current),
    )


# ── Program summary ─────────────────────────────────────────────────

def summarize_drift(results: Iterable[ClassificationResult], resident_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Program-level drift report."""
    results = list(results)
    ids = list(resident_ids) if resident_ids else [str(i) for i in range(len(results))]
    by_cause: Dict[str, int] = {cause.value: 0 for cause in DriftCause}
    details = []

    for resident_id, result in zip(ids, results):
        if not result.has_version_drift or result.drift_reason is None:
            continue
        reason = result.drift_reason
        by_cause[reason.cause.value] += 1
        details.append({
            "resident_id": resident_id,
            "original_archetype": result.original_classification.archetype_name,
            "current_archetype": result.current_classification.archetype_name,
            "original_version": reason.original_version,
            "current_version": reason.current_version,
            "cause": reason.cause.value,
            "message": reason.message,
        })

    total = len(results)
    with_drift = len(details)
    return {
        "total_residents": total,
        "with_drift": with_drift,
        "drift_percentage": round(with_drift / total * 100, 1) if total else 0.0,
        "by_cause": by_cause,
        "drift_details": details,
    }
