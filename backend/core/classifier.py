"""
classifier.py — ITE trajectory classifier.

Maps a ScoreSeries to a Classification against an ArchetypeCatalog:
- Rule set chosen by how many consecutive PGY years (from PGY1) are present
- Every rule in the set is scored: weight × fit, where fit is 1 for a full
  match and decays with the distance from the violated bounds otherwise
- Highest score wins (ties go to catalog order); confidence is that score
  discounted by the share of competing evidence
- Risk comes from the archetype, escalated one level for a large drop seen
  while data is still incomplete
- Fewer than three years → provisional, with an explanatory note

Pure function of (series, catalog): no I/O, no module state.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from core.archetypes import ArchetypeCatalog, ArchetypeDefinition, RiskLevel
from core.errors import InvalidSeriesError
from core.series import ScoreSeries

logger = logging.getLogger(__name__)

TRAINING_YEARS = 3

# Partial matches are capped below any full match of comparable weight
PARTIAL_MATCH_FACTOR = 0.5

AWAITING_DATA_ID = "awaiting_data"
UNCLASSIFIED_ID = "unclassified"


# ── Types ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ClassificationMetrics:
    pgy1: Optional[float] = None
    pgy2: Optional[float] = None
    pgy3: Optional[float] = None
    delta12: Optional[float] = None
    delta23: Optional[float] = None
    delta_total: Optional[float] = None

    def get(self, metric: str) -> Optional[float]:
        return getattr(self, metric)

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {
            "pgy1": self.pgy1,
            "pgy2": self.pgy2,
            "pgy3": self.pgy3,
            "delta12": self.delta12,
            "delta23": self.delta23,
            "delta_total": self.delta_total,
        }


@dataclass(frozen=True)
class Alternative:
    archetype_id: str
    archetype_name: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archetype_id": self.archetype_id,
            "archetype_name": self.archetype_name,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class Classification:
    archetype_id: str
    archetype_name: str
    confidence: float
    risk_level: RiskLevel
    is_provisional: bool
    methodology_version: str
    data_years: int
    note: Optional[str] = None
    color: str = "#7F8C8D"
    description: str = ""
    recommendations: Tuple[str, ...] = ()
    metrics: ClassificationMetrics = field(default_factory=ClassificationMetrics)
    escalated: bool = False

    @property
    def is_awaiting_data(self) -> bool:
        return self.archetype_id == AWAITING_DATA_ID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archetype_id": self.archetype_id,
            "archetype_name": self.archetype_name,
            "confidence": self.confidence,
            "risk_level": self.risk_level.value,
            "is_provisional": self.is_provisional,
            "methodology_version": self.methodology_version,
            "data_years": self.data_years,
            "note": self.note,
            "color": self.color,
            "description": self.description,
            "recommendations": list(self.recommendations),
            "metrics": self.metrics.to_dict(),
            "escalated": self.escalated,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Classification":
        """Rebuild a persisted classification (e.g. the original one)."""
        metrics_raw = data.get("metrics") or {}
        metrics = ClassificationMetrics(**{
            k: (float(v) if v is not None else None)
            for k, v in metrics_raw.items()
            if k in ClassificationMetrics.__dataclass_fields__
        })
        if data.get("data_years") is not None:
            data_years = int(data["data_years"])
        elif metrics_raw:
            data_years = sum(1 for v in (metrics.pgy1, metrics.pgy2, metrics.pgy3) if v is not None)
        else:
            raise ValueError("Persisted classification has neither data_years nor metrics.")

        for key in ("archetype_id", "archetype_name", "methodology_version"):
            if not data.get(key):
                raise ValueError(f"Persisted classification is missing '{key}'.")

        return cls(
            archetype_id=str(data["archetype_id"]),
            archetype_name=str(data["archetype_name"]),
            confidence=float(data.get("confidence") or 0.0),
            risk_level=RiskLevel(data.get("risk_level") or RiskLevel.MODERATE.value),
            is_provisional=bool(data.get("is_provisional", data_years < TRAINING_YEARS)),
            methodology_version=str(data["methodology_version"]),
            data_years=data_years,
            note=data.get("note"),
            color=str(data.get("color") or "#7F8C8D"),
            description=str(data.get("description") or ""),
            recommendations=tuple(data.get("recommendations") or ()),
            metrics=metrics,
            escalated=bool(data.get("escalated", False)),
        )


@dataclass(frozen=True)
class _Candidate:
    order: int
    definition: ArchetypeDefinition
    raw: float


# ── Metrics ─────────────────────────────────────────────────────────

def _delta(later: Optional[float], earlier: Optional[float]) -> Optional[float]:
    if later is None or earlier is None:
        return None
    return later - earlier


def compute_metrics(series: ScoreSeries) -> ClassificationMetrics:
    """PGY percentiles and year-over-year deltas; never bridged across a gap."""
    pgy1 = series.percentile_for(0)
    pgy2 = series.percentile_for(1)
    pgy3 = series.percentile_for(2)
    return ClassificationMetrics(
        pgy1=pgy1,
        pgy2=pgy2,
        pgy3=pgy3,
        delta12=_delta(pgy2, pgy1),
        delta23=_delta(pgy3, pgy2),
        delta_total=_delta(pgy3, pgy1) if pgy2 is not None else None,
    )


def usable_data_years(metrics: ClassificationMetrics) -> int:
    """Consecutive years available starting at PGY1."""
    count = 0
    for value in (metrics.pgy1, metrics.pgy2, metrics.pgy3):
        if value is None:
            break
        count += 1
    return count


# ── Scoring ─────────────────────────────────────────────────────────

def score_rule(
    definition: ArchetypeDefinition,
    metrics: ClassificationMetrics,
    softness: float,
) -> Optional[float]:
    """
    Raw score of one archetype rule, or None when a metric it needs is missing.
    """
    violation = 0.0
    matched = True
    for criterion in definition.criteria:
        observed = metrics.get(criterion.metric)
        if observed is None:
            return None
        if not criterion.satisfied(observed):
            matched = False
            violation += criterion.violation(observed)
    if matched:
        return definition.weight
    return definition.weight * PARTIAL_MATCH_FACTOR * math.exp(-violation / softness)


def _rank_candidates(
    definitions: Tuple[ArchetypeDefinition, ...],
    metrics: ClassificationMetrics,
    softness: float,
) -> List[_Candidate]:
    candidates = []
    for order, definition in enumerate(definitions):
        raw = score_rule(definition, metrics, softness)
        if raw is not None:
            candidates.append(_Candidate(order=order, definition=definition, raw=raw))
    candidates.sort(key=lambda c: (-c.raw, c.order))
    return candidates


# ── Sentinels ───────────────────────────────────────────────────────

def _awaiting_data(catalog: ArchetypeCatalog) -> Classification:
    return Classification(
        archetype_id=AWAITING_DATA_ID,
        archetype_name="Awaiting Data",
        confidence=0.0,
        risk_level=RiskLevel.LOW,
        is_provisional=True,
        methodology_version=catalog.version,
        data_years=0,
        note="No ITE data available yet",
        color="#BDC3C7",
        description="Awaiting first ITE score",
        recommendations=("Await PGY1 ITE results",),
    )


def _unclassified(catalog: ArchetypeCatalog, metrics: ClassificationMetrics, data_years: int) -> Classification:
    return Classification(
        archetype_id=UNCLASSIFIED_ID,
        archetype_name="Unclassified",
        confidence=0.0,
        risk_level=RiskLevel.MODERATE,
        is_provisional=True,
        methodology_version=catalog.version,
        data_years=data_years,
        note="PGY1 ITE score missing; a PGY1 baseline is needed before the trajectory can be classified",
        color="#7F8C8D",
        description="ITE data present but no rule set applies",
        recommendations=("Confirm the PGY1 ITE result was recorded", "Individual assessment needed"),
        metrics=metrics,
    )


def _provisional_note(definition: ArchetypeDefinition, metrics: ClassificationMetrics, data_years: int) -> str:
    parts = []
    if definition.note:
        parts.append(definition.note)
    parts.append(
        f"Provisional: based on {data_years} of {TRAINING_YEARS} ITE years; "
        "classification will refine as more scores arrive"
    )
    missing = [
        f"PGY{i}" for i, value in enumerate((metrics.pgy1, metrics.pgy2, metrics.pgy3), start=1)
        if value is None
    ]
    present_after_gap = data_years > usable_data_years(metrics)
    if present_after_gap:
        parts.append(f"{', '.join(missing)} missing; deltas are not computed across the gap")
    return ". ".join(parts)


# ── Classification ──────────────────────────────────────────────────

def classify_with_alternatives(
    series: ScoreSeries,
    catalog: ArchetypeCatalog,
) -> Tuple[Classification, List[Alternative]]:
    """Classify a series and return the ranked runner-up archetypes."""
    if not series.is_well_formed():
        logger.error(
            "Classifier received a malformed series (methodology %s): %s",
            catalog.version, series.to_list(),
        )
        raise InvalidSeriesError(
            f"Score series must be sorted by unique year index with percentiles in 0-100: {series.to_list()}"
        )

    window = [p for p in series.points if p.year_index < TRAINING_YEARS]
    if len(window) < len(series.points):
        logger.warning(
            "Ignoring %d score(s) beyond PGY%d (year indices %s)",
            len(series.points) - len(window), TRAINING_YEARS,
            [p.year_index for p in series.points if p.year_index >= TRAINING_YEARS],
        )
    data_years = len(window)
    if data_years == 0:
        return _awaiting_data(catalog), []

    metrics = compute_metrics(series)
    rule_years = usable_data_years(metrics)
    definitions = catalog.rule_set(rule_years) if rule_years else ()
    candidates = _rank_candidates(definitions, metrics, catalog.softness)
    if not candidates:
        return _unclassified(catalog, metrics, data_years), []

    primary = candidates[0]
    total = sum(c.raw for c in candidates if not c.definition.is_fallback)
    if primary.definition.is_fallback:
        total += primary.raw

    def confidence(c: _Candidate) -> float:
        return min(1.0, c.raw * c.raw / total) if total > 0 else 0.0

    definition = primary.definition
    risk = definition.default_risk_level
    escalated = False
    if data_years < TRAINING_YEARS:
        drops = [d for d in (metrics.delta12, metrics.delta23, metrics.delta_total) if d is not None]
        if drops and min(drops) <= catalog.escalation_delta and risk != RiskLevel.HIGH:
            risk = risk.escalate()
            escalated = True

    is_provisional = data_years < TRAINING_YEARS
    if is_provisional:
        note = _provisional_note(definition, metrics, data_years)
    else:
        note = definition.note or None

    classification = Classification(
        archetype_id=definition.id,
        archetype_name=definition.name,
        confidence=confidence(primary),
        risk_level=risk,
        is_provisional=is_provisional,
        methodology_version=catalog.version,
        data_years=data_years,
        note=note,
        color=definition.color,
        description=definition.description,
        recommendations=definition.recommendations,
        metrics=metrics,
        escalated=escalated,
    )

    alternatives = [
        Alternative(c.definition.id, c.definition.name, confidence(c))
        for c in candidates[1:]
        if not c.definition.is_fallback and confidence(c) >= catalog.alternative_floor
    ]
    alternatives.sort(key=lambda a: -a.confidence)
    return classification, alternatives[: catalog.max_alternatives]


def classify_series(series: ScoreSeries, catalog: ArchetypeCatalog) -> Classification:
    return classify_with_alternatives(series, catalog)[0]
