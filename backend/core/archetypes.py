"""
archetypes.py — Archetype Catalog.

A versioned, read-only table of ITE trajectory patterns, partitioned into
rule sets by how many PGY years of data a rule needs (1, 2 or 3). Each entry
carries its display name, color, default risk level, description and the
bounds that define a match. The position of an entry inside its rule set is
its classification priority.

The catalog is configuration: the built-in "Memorial Baseline" below can be
replaced by a JSON file with the same shape (see load_catalog). Swapping the
catalog is a methodology version bump.
"""

import json
import logging
import operator
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from core.errors import CatalogValidationError, UnknownArchetypeError

logger = logging.getLogger(__name__)


class RiskLevel(str, Enum):
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"

    def escalate(self) -> "RiskLevel":
        order = [RiskLevel.LOW, RiskLevel.MODERATE, RiskLevel.HIGH]
        return order[min(order.index(self) + 1, len(order) - 1)]


# Metrics a rule may constrain, by the data years that make them available
METRICS_BY_YEARS = {
    1: ("pgy1",),
    2: ("pgy1", "pgy2", "delta12"),
    3: ("pgy1", "pgy2", "pgy3", "delta12", "delta23", "delta_total"),
}

BOUND_OPS = {
    "min": operator.ge,
    "max": operator.le,
    "gt": operator.gt,
    "lt": operator.lt,
}


# ── Catalog types ───────────────────────────────────────────────────

@dataclass(frozen=True)
class Criterion:
    metric: str
    op: str
    value: float

    def satisfied(self, observed: float) -> bool:
        return BOUND_OPS[self.op](observed, self.value)

    def violation(self, observed: float) -> float:
        """Distance (in percentile points) from the bound; 0 when satisfied."""
        if self.satisfied(observed):
            return 0.0
        return abs(observed - self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {"metric": self.metric, "op": self.op, "value": self.value}


@dataclass(frozen=True)
class ArchetypeDefinition:
    id: str
    name: str
    required_data_years: int
    color: str
    default_risk_level: RiskLevel
    description: str
    criteria: Tuple[Criterion, ...] = ()
    weight: float = 0.5
    note: str = ""
    recommendations: Tuple[str, ...] = ()

    @property
    def is_fallback(self) -> bool:
        """A rule with no criteria matches any series in its rule set."""
        return not self.criteria

    @property
    def metrics_used(self) -> Tuple[str, ...]:
        return tuple(sorted({c.metric for c in self.criteria}))

    def to_dict(self) -> Dict[str, Any]:
        criteria: Dict[str, Dict[str, float]] = {}
        for c in self.criteria:
            criteria.setdefault(c.metric, {})[c.op] = c.value
        return {
            "id": self.id,
            "name": self.name,
            "required_data_years": self.required_data_years,
            "color": self.color,
            "risk_level": self.default_risk_level.value,
            "description": self.description,
            "criteria": criteria,
            "weight": self.weight,
            "note": self.note,
            "recommendations": list(self.recommendations),
        }


@dataclass(frozen=True)
class ArchetypeCatalog:
    version: str
    name: str
    rule_sets: Tuple[Tuple[int, Tuple[ArchetypeDefinition, ...]], ...]
    escalation_delta: float = -30.0
    softness: float = 10.0
    max_alternatives: int = 3
    alternative_floor: float = 0.01
    _index: Dict[Tuple[int, str], ArchetypeDefinition] = field(
        default_factory=dict, repr=False, compare=False
    )

    def __post_init__(self):
        for years, definitions in self.rule_sets:
            for d in definitions:
                self._index[(years, d.id)] = d

    @property
    def data_year_counts(self) -> List[int]:
        return sorted(years for years, _ in self.rule_sets)

    def rule_set(self, data_years: int) -> Tuple[ArchetypeDefinition, ...]:
        for years, definitions in self.rule_sets:
            if years == data_years:
                return definitions
        return ()

    def get(self, archetype_id: str, data_years: Optional[int] = None) -> ArchetypeDefinition:
        """
        Look up a definition by id.

        The same id can live in several rule sets (a provisional "on track"
        entry shares the id of the confirmed pattern); without data_years the
        most complete rule set wins.
        """
        if data_years is not None:
            found = self._index.get((data_years, archetype_id))
            if found is None:
                raise UnknownArchetypeError(archetype_id, self.version)
            return found
        for years in sorted(self.data_year_counts, reverse=True):
            found = self._index.get((years, archetype_id))
            if found is not None:
                return found
        raise UnknownArchetypeError(archetype_id, self.version)

    def find_by_name(self, name: str) -> Optional[ArchetypeDefinition]:
        for years in sorted(self.data_year_counts, reverse=True):
            for d in self.rule_set(years):
                if d.name == name:
                    return d
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "name": self.name,
            "escalation_delta": self.escalation_delta,
            "softness": self.softness,
            "max_alternatives": self.max_alternatives,
            "alternative_floor": self.alternative_floor,
            "rule_sets": {
                str(years): [d.to_dict() for d in definitions]
                for years, definitions in self.rule_sets
            },
        }


# ── Memorial Baseline (methodology 1.0.0) ───────────────────────────
# Thresholds derived from the Classes of 2024 & 2025 ITE data. They are
# calibration parameters and need program-director sign-off before change.

MEMORIAL_BASELINE: Dict[str, Any] = {
    "version": "1.0.0",
    "name": "Memorial Baseline",
    "escalation_delta": -30,
    "softness": 10,
    "max_alternatives": 3,
    "alternative_floor": 0.01,
    "rule_sets": {
        "3": [
            {
                "id": "elite_performer",
                "name": "Elite Performer",
                "color": "#1ABC9C",
                "risk_level": "Low",
                "description": "Started elite (85%+), maintained elite through PGY2 (85%+), ended above average (50%+)",
                "criteria": {"pgy1": {"min": 85}, "pgy2": {"min": 85}, "pgy3": {"min": 50}},
                "weight": 0.95,
                "recommendations": [
                    "Consider for leadership opportunities",
                    "Discuss fellowship interests",
                    "Potential teaching/mentorship role",
                ],
            },
            {
                "id": "elite_late_struggle",
                "name": "Elite → Late Struggle",
                "color": "#E67E22",
                "risk_level": "Moderate",
                "description": "Started elite, maintained through PGY2, but significant PGY3 decline (<50%)",
                "criteria": {"pgy1": {"min": 75}, "pgy2": {"min": 80}, "pgy3": {"lt": 50}},
                "weight": 0.90,
                "recommendations": [
                    "Investigate PGY3 performance drop factors",
                    "Assess burnout or external stressors",
                    "Consider board prep resources",
                    "Schedule check-in meetings",
                ],
            },
            {
                "id": "breakthrough_performer",
                "name": "Breakthrough Performer",
                "color": "#3498DB",
                "risk_level": "Low",
                "description": "Major improvement PGY1→PGY2 (+25 pts), sustained at PGY3 (70%+)",
                "criteria": {"delta12": {"min": 25}, "pgy3": {"min": 70}},
                "weight": 0.90,
                "recommendations": [
                    "Document what strategies worked for improvement",
                    "Consider peer mentorship role",
                    "Strong momentum - maintain engagement",
                ],
            },
            {
                "id": "peak_decline",
                "name": "Peak & Decline",
                "color": "#E74C3C",
                "risk_level": "High",
                "description": "Improved PGY1→PGY2 (+10pts), then significant PGY3 drop (-30pts)",
                "criteria": {"delta12": {"min": 10}, "delta23": {"max": -30}},
                "weight": 0.85,
                "recommendations": [
                    "URGENT: Schedule PD meeting",
                    "Assess for burnout or personal issues",
                    "Board prep support critical",
                    "Consider tutoring resources",
                    "Weekly check-ins recommended",
                ],
            },
            {
                "id": "sophomore_slump_recovery",
                "name": "Sophomore Slump → Strong Recovery",
                "color": "#F39C12",
                "risk_level": "Low",
                "description": "Dropped at PGY2 (-15pts), then strong PGY3 recovery (+40pts)",
                "criteria": {"delta12": {"max": -15}, "delta23": {"min": 40}},
                "weight": 0.90,
                "recommendations": [
                    "Reassure - strong recovery pattern demonstrated",
                    "Document what drove PGY3 success",
                    "Connect with current PGY2s showing similar PGY2 dip",
                ],
            },
            {
                "id": "continuous_decline",
                "name": "Continuous Decline",
                "color": "#C0392B",
                "risk_level": "High",
                "description": "Declining trajectory each year (negative deltas)",
                "criteria": {"delta12": {"lt": 0}, "delta23": {"lt": 0}, "delta_total": {"max": -20}},
                "weight": 0.85,
                "recommendations": [
                    "URGENT: Intensive support needed",
                    "Weekly check-ins mandatory",
                    "Assign dedicated mentor",
                    "Assess for underlying issues",
                    "Board prep intervention critical",
                ],
            },
            {
                "id": "late_bloomer",
                "name": "Late Bloomer",
                "color": "#9B59B6",
                "risk_level": "Low",
                "description": "Low start (≤40%), gradual or late improvement through PGY3",
                "criteria": {"pgy1": {"max": 40}, "delta23": {"min": 15}, "delta_total": {"gt": 0}},
                "weight": 0.85,
                "recommendations": [
                    "Positive trajectory - encourage continuation",
                    "Many late bloomers accelerate further",
                    "Continue current support approach",
                ],
            },
            {
                "id": "steady_climber",
                "name": "Steady Climber",
                "color": "#27AE60",
                "risk_level": "Low",
                "description": "Consistent improvement each year (positive deltas)",
                "criteria": {"delta12": {"min": 0}, "delta23": {"min": 0}, "delta_total": {"min": 10}},
                "weight": 0.80,
                "recommendations": [
                    "Positive consistent trajectory",
                    "Continue current approach",
                    "May benefit from stretch goals",
                ],
            },
            {
                "id": "variable",
                "name": "Variable",
                "color": "#7F8C8D",
                "risk_level": "Moderate",
                "description": "Pattern does not fit standard archetypes - unique trajectory",
                "criteria": {},
                "weight": 0.60,
                "recommendations": [
                    "Monitor trajectory closely",
                    "Individualized approach needed",
                    "Document unique factors",
                ],
            },
        ],
        "2": [
            {
                "id": "elite_performer",
                "name": "Elite Performer",
                "color": "#1ABC9C",
                "risk_level": "Low",
                "description": "On track for Elite - PGY3 will confirm",
                "criteria": {"pgy1": {"min": 85}, "pgy2": {"min": 85}},
                "weight": 0.85,
                "note": "On track for Elite Performer - PGY3 will confirm",
                "recommendations": ["Maintain current approach", "Consider leadership opportunities"],
            },
            {
                "id": "breakthrough_performer",
                "name": "Breakthrough Performer",
                "color": "#3498DB",
                "risk_level": "Low",
                "description": "Strong surge - monitor for sustainment",
                "criteria": {"delta12": {"min": 25}, "pgy2": {"min": 60}},
                "weight": 0.75,
                "note": "Strong surge - monitor for PGY3 sustainment",
                "recommendations": ["Document what drove improvement", "Monitor PGY3 for sustainment"],
            },
            {
                "id": "trending_peak",
                "name": "Trending: Peak (monitor PGY3)",
                "color": "#F39C12",
                "risk_level": "Moderate",
                "description": "Good improvement - PGY3 critical",
                "criteria": {"delta12": {"min": 10}, "pgy2": {"min": 60}},
                "weight": 0.70,
                "note": "Good improvement but Class 2024 showed PGY3 drops - monitor closely",
                "recommendations": [
                    "Critical: Monitor PGY3 closely",
                    "Class 2024 showed PGY3 drops after similar pattern",
                    "Proactive support recommended",
                ],
            },
            {
                "id": "trending_slump",
                "name": "Trending: Sophomore Slump",
                "color": "#E67E22",
                "risk_level": "Moderate",
                "description": "PGY2 dip - recovery potential at PGY3",
                "criteria": {"delta12": {"max": -15}},
                "weight": 0.75,
                "note": "PGY2 dip - historical data shows strong recovery potential at PGY3",
                "recommendations": [
                    "Reassure - recovery common",
                    "Historical data shows 57-point PGY3 rebounds",
                    "Connect with recovered residents",
                ],
            },
            {
                "id": "trending_late_bloomer",
                "name": "Trending: Late Bloomer",
                "color": "#9B59B6",
                "risk_level": "Moderate",
                "description": "Low start - watch for PGY3 acceleration",
                "criteria": {"pgy1": {"max": 40}, "pgy2": {"max": 40}},
                "weight": 0.70,
                "note": "Low start - watch for PGY3 acceleration (common pattern)",
                "recommendations": [
                    "Continue supportive environment",
                    "Many accelerate at PGY3",
                    "Board prep support",
                ],
            },
            {
                "id": "trending_decline",
                "name": "Trending: Decline Risk",
                "color": "#E74C3C",
                "risk_level": "High",
                "description": "Declining trajectory - intervention recommended",
                "criteria": {"delta12": {"lt": -10}, "pgy2": {"lt": 50}},
                "weight": 0.75,
                "note": "Declining trajectory - intervention recommended",
                "recommendations": ["Schedule meeting", "Assess external factors", "Consider tutoring resources"],
            },
            {
                "id": "trending_stable",
                "name": "Trending: Stable",
                "color": "#95A5A6",
                "risk_level": "Low",
                "description": "Stable trajectory - PGY3 will clarify",
                "criteria": {"delta12": {"min": -15, "max": 15}},
                "weight": 0.65,
                "note": "Stable trajectory - PGY3 will clarify final archetype",
                "recommendations": ["Monitor PGY3", "Standard progression"],
            },
            {
                "id": "trending_variable",
                "name": "Trending: Variable",
                "color": "#7F8C8D",
                "risk_level": "Moderate",
                "description": "Non-standard pattern - monitor closely",
                "criteria": {},
                "weight": 0.50,
                "note": "Non-standard pattern - monitor closely",
                "recommendations": ["Individualized approach", "Close monitoring"],
            },
        ],
        "1": [
            {
                "id": "potential_elite",
                "name": "Potential: Elite",
                "color": "#1ABC9C",
                "risk_level": "Low",
                "description": "Strong start - many trajectories possible",
                "criteria": {"pgy1": {"min": 85}},
                "weight": 0.60,
                "note": "Strong start - many trajectories possible including Elite Performer",
                "recommendations": ["Standard monitoring", "PGY2 will reveal trajectory direction"],
            },
            {
                "id": "potential_strong",
                "name": "Potential: Strong Start",
                "color": "#3498DB",
                "risk_level": "Low",
                "description": "Above average start - watch PGY2",
                "criteria": {"pgy1": {"min": 65, "lt": 85}},
                "weight": 0.55,
                "note": "Above average start - watch PGY2 for trajectory direction",
                "recommendations": ["Standard monitoring", "PGY2 will reveal trajectory direction"],
            },
            {
                "id": "potential_average",
                "name": "Potential: Average Start",
                "color": "#95A5A6",
                "risk_level": "Low",
                "description": "Mid-range start - multiple paths possible",
                "criteria": {"pgy1": {"min": 40, "lt": 65}},
                "weight": 0.50,
                "note": "Mid-range start - multiple paths possible",
                "recommendations": ["Watch PGY2 closely", "Many paths possible from this starting point"],
            },
            {
                "id": "potential_below_average",
                "name": "Potential: Below Average",
                "color": "#9B59B6",
                "risk_level": "Moderate",
                "description": "Lower start - may be Late Bloomer",
                "criteria": {"pgy1": {"min": 20, "lt": 40}},
                "weight": 0.55,
                "note": "Lower start - may follow Late Bloomer trajectory",
                "recommendations": [
                    "Consider early support resources",
                    "May be Late Bloomer - encourage",
                    "PGY2 critical for trajectory",
                ],
            },
            {
                "id": "potential_at_risk",
                "name": "Potential: At Risk",
                "color": "#E74C3C",
                "risk_level": "High",
                "description": "Very low start - consider early support",
                "criteria": {"pgy1": {"lt": 20}},
                "weight": 0.60,
                "note": "Very low start - consider early support resources",
                "recommendations": [
                    "Consider early support resources",
                    "May be Late Bloomer - encourage",
                    "PGY2 critical for trajectory",
                ],
            },
        ],
    },
}


# ── Building & validation ───────────────────────────────────────────

def _parse_definition(raw: Dict[str, Any], years: int) -> ArchetypeDefinition:
    for key in ("id", "name", "color", "risk_level", "description"):
        if not raw.get(key):
            raise CatalogValidationError(f"{years}-year archetype is missing '{key}': {raw!r}")

    archetype_id = str(raw["id"])
    try:
        risk = RiskLevel(raw["risk_level"])
    except ValueError:
        raise CatalogValidationError(
            f"Archetype '{archetype_id}' has invalid risk level {raw['risk_level']!r}"
        ) from None

    allowed = METRICS_BY_YEARS[years]
    criteria: List[Criterion] = []
    for metric, bounds in (raw.get("criteria") or {}).items():
        if metric not in allowed:
            raise CatalogValidationError(
                f"Archetype '{archetype_id}' uses metric '{metric}', "
                f"not available with {years} year(s) of data"
            )
        if not isinstance(bounds, dict) or not bounds:
            raise CatalogValidationError(f"Archetype '{archetype_id}' has empty bounds for '{metric}'")
        for op, value in bounds.items():
            if op not in BOUND_OPS:
                raise CatalogValidationError(f"Archetype '{archetype_id}' uses unknown bound '{op}'")
            criteria.append(Criterion(metric=metric, op=op, value=float(value)))

    weight = float(raw.get("weight", 0.5))
    if not 0 < weight <= 1:
        raise CatalogValidationError(f"Archetype '{archetype_id}' weight must be in (0, 1], got {weight}")

    return ArchetypeDefinition(
        id=archetype_id,
        name=str(raw["name"]),
        required_data_years=years,
        color=str(raw["color"]),
        default_risk_level=risk,
        description=str(raw["description"]),
        criteria=tuple(criteria),
        weight=weight,
        note=str(raw.get("note") or ""),
        recommendations=tuple(str(r) for r in raw.get("recommendations") or ()),
    )


def catalog_from_dict(data: Dict[str, Any]) -> ArchetypeCatalog:
    """Build and validate a catalog from its JSON-shaped description."""
    version = str(data.get("version") or "").strip()
    if not version:
        raise CatalogValidationError("Catalog has no methodology version.")

    raw_sets = data.get("rule_sets") or {}
    if not raw_sets:
        raise CatalogValidationError(f"Catalog {version} defines no rule sets.")

    rule_sets = []
    for key, entries in raw_sets.items():
        try:
            years = int(key)
        except (TypeError, ValueError):
            raise CatalogValidationError(f"Rule set key {key!r} is not a data-year count") from None
        if years not in METRICS_BY_YEARS:
            raise CatalogValidationError(f"Rule set for {years} data years is not supported (1-3)")
        if not entries:
            raise CatalogValidationError(f"The {years}-year rule set is empty")

        definitions = tuple(_parse_definition(raw, years) for raw in entries)
        ids = [d.id for d in definitions]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise CatalogValidationError(f"Duplicate archetype ids in {years}-year rule set: {duplicates}")
        if sum(1 for d in definitions if d.is_fallback) > 1:
            raise CatalogValidationError(f"The {years}-year rule set has more than one fallback archetype")
        rule_sets.append((years, definitions))

    rule_sets.sort(key=lambda item: item[0])

    return ArchetypeCatalog(
        version=version,
        name=str(data.get("name") or f"Methodology v{version}"),
        rule_sets=tuple(rule_sets),
        escalation_delta=float(data.get("escalation_delta", -30.0)),
        softness=float(data.get("softness", 10.0)),
        max_alternatives=int(data.get("max_alternatives", 3)),
        alternative_floor=float(data.get("alternative_floor", 0.01)),
    )


def default_catalog() -> ArchetypeCatalog:
    return catalog_from_dict(MEMORIAL_BASELINE)


def load_catalog(path: Union[str, Path]) -> ArchetypeCatalog:
    """Load a catalog from a JSON file."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    catalog = catalog_from_dict(data)
    logger.info("Loaded archetype catalog %s (%s) from %s", catalog.version, catalog.name, path)
    return catalog


# ── Provider ────────────────────────────────────────────────────────

class CatalogProvider:
    """
    Holds the active catalog.

    Readers take a snapshot via ``current`` and keep it for the whole
    computation; ``reload``/``swap`` replace the reference in one step, so no
    request ever sees a half-old, half-new catalog.
    """

    def __init__(self, catalog: Optional[ArchetypeCatalog] = None, path: Optional[Union[str, Path]] = None):
        self._lock = threading.Lock()
        self._path = Path(path) if path else None
        if catalog is not None:
            self._catalog = catalog
        elif self._path is not None:
            self._catalog = load_catalog(self._path)
        else:
            self._catalog = default_catalog()

    @property
    def current(self) -> ArchetypeCatalog:
        return self._catalog

    def swap(self, catalog: ArchetypeCatalog) -> ArchetypeCatalog:
        with self._lock:
            previous = self._catalog
            self._catalog = catalog
        if previous.version != catalog.version:
            logger.info("Methodology version changed %s -> %s", previous.version, catalog.version)
        return previous

    def reload(self, path: Optional[Union[str, Path]] = None) -> ArchetypeCatalog:
        """Re-read the catalog file (or the built-in baseline when none is configured)."""
        path = Path(path) if path is not None else self._path
        catalog = load_catalog(path) if path else default_catalog()
        self._path = path
        self.swap(catalog)
        return catalog
