"""
methodology.py — Methodology review helpers.

- check_evolution_triggers: conditions that call for reviewing the
  archetype catalog (a class finished PGY3, too many Variable results,
  recurring shapes among Variable cases)
- detect_pattern_clusters: groups complete-data Variable cases by their
  rounded (delta12, delta23) and proposes a name for each cluster
- compare_across_versions: one series classified under several catalogs
- propose_catalog / next_methodology_version: a new catalog version with
  archetypes added, removed or re-thresholded
"""

import copy
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from core.archetypes import ArchetypeCatalog, catalog_from_dict
from core.classifier import classify_series
from core.series import ScoreSeries

logger = logging.getLogger(__name__)

BUCKET_SIZE = 10
DEFAULT_VARIABLE_ID = "variable"


@dataclass
class PatternCluster:
    delta12_bucket: int
    delta23_bucket: int
    suggested_name: str
    residents: List[str]
    centroid: Dict[str, float]
    status: str = "detected"

    @property
    def member_count(self) -> int:
        return len(self.residents)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "delta12_bucket": self.delta12_bucket,
            "delta23_bucket": self.delta23_bucket,
            "suggested_name": self.suggested_name,
            "residents": list(self.residents),
            "member_count": self.member_count,
            "centroid": dict(self.centroid),
            "status": self.status,
        }


@dataclass
class EvolutionTrigger:
    type: str
    details: str
    recommendation: str
    affected_residents: List[str] = field(default_factory=list)
    supporting_metrics: Dict[str, Any] = field(default_factory=dict)
    status: str = "pending"
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    triggered_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "triggered_at": self.triggered_at,
            "details": self.details,
            "recommendation": self.recommendation,
            "affected_residents": list(self.affected_residents),
            "supporting_metrics": dict(self.supporting_metrics),
            "status": self.status,
        }


# ── Helpers ─────────────────────────────────────────────────────────

def _bucket(value: float) -> int:
    # halves round up: 5 -> 10, -5 -> 0
    return int(math.floor(value / BUCKET_SIZE + 0.5)) * BUCKET_SIZE


def _num(row: Dict[str, Any], *keys: str) -> Optional[float]:
    for k in keys:
        v = row.get(k)
        if v is not None:
            return float(v)
    return None


def _suggest_name(d12: int, d23: int) -> str:
    if d12 > 0 and d23 < 0:
        return "Moderate Peak & Decline"
    if d12 < 0 and d23 > 0:
        return "Partial Recovery"
    if d12 > 0 and d23 > 0:
        return "Accelerating"
    if d12 < 0 and d23 < 0:
        return "Gradual Decline"
    if abs(d12) <= 10 and d23 < -10:
        return "Late Fade"
    return "New Pattern"


def _variable_id(catalog: Optional[ArchetypeCatalog]) -> str:
    if catalog is None:
        return DEFAULT_VARIABLE_ID
    for years in sorted(catalog.data_year_counts, reverse=True):
        for d in catalog.rule_set(years):
            if d.is_fallback:
                return d.id
    return DEFAULT_VARIABLE_ID


# ── Pattern clusters ────────────────────────────────────────────────

def detect_pattern_clusters(cases: Iterable[Dict[str, Any]], min_members: int = 3) -> List[PatternCluster]:
    """
    Cluster Variable cases that have all three PGY percentiles.

    Each case is a stored classification row (resident_id, pgy1_percentile,
    pgy2_percentile, pgy3_percentile, optional delta_12 / delta_23).
    """
    buckets: Dict[tuple, List[Dict[str, Any]]] = {}
    for c in cases:
        p1 = _num(c, "pgy1_percentile", "pgy1")
        p2 = _num(c, "pgy2_percentile", "pgy2")
        p3 = _num(c, "pgy3_percentile", "pgy3")
        if p1 is None or p2 is None or p3 is None:
            continue
        d12 = _num(c, "delta_12", "delta12")
        d23 = _num(c, "delta_23", "delta23")
        d12 = d12 if d12 is not None else p2 - p1
        d23 = d23 if d23 is not None else p3 - p2
        key = (_bucket(d12), _bucket(d23))
        buckets.setdefault(key, []).append({"resident_id": str(c.get("resident_id")), "p": (p1, p2, p3)})

    clusters = []
    for (d12, d23), members in sorted(buckets.items()):
        if len(members) < min_members:
            continue
        n = len(members)
        clusters.append(PatternCluster(
            delta12_bucket=d12,
            delta23_bucket=d23,
            suggested_name=_suggest_name(d12, d23),
            residents=[m["resident_id"] for m in members],
            centroid={
                "avg_pgy1": sum(m["p"][0] for m in members) / n,
                "avg_pgy2": sum(m["p"][1] for m in members) / n,
                "avg_pgy3": sum(m["p"][2] for m in members) / n,
                "avg_delta12": float(d12),
                "avg_delta23": float(d23),
            },
        ))
    return clusters


# ── Evolution triggers ──────────────────────────────────────────────

def check_evolution_triggers(
    classifications: List[Dict[str, Any]],
    current_year: int,
    variable_rate_threshold: float = 0.15,
    catalog: Optional[ArchetypeCatalog] = None,
    min_cluster_members: int = 3,
) -> List[EvolutionTrigger]:
    """
    Review conditions over the stored classifications of a program.

    Rows carry current_archetype_id, class_year (or graduation_year) and the
    PGY percentiles.
    """
    triggers: List[EvolutionTrigger] = []
    if not classifications:
        return triggers

    variable_id = _variable_id(catalog)

    years = [
        int(y) for y in (c.get("class_year", c.get("graduation_year")) for c in classifications)
        if y is not None
    ]
    if years and max(years) >= current_year:
        latest = max(years)
        triggers.append(EvolutionTrigger(
            type="annual_review",
            details=f"Class of {latest} has completed PGY3",
            recommendation="Review archetype accuracy against board outcomes",
            supporting_metrics={"latest_class": latest, "current_year": current_year},
        ))

    variable = [c for c in classifications if c.get("current_archetype_id") == variable_id]
    rate = len(variable) / len(classifications)
    if rate > variable_rate_threshold:
        triggers.append(EvolutionTrigger(
            type="threshold_breach",
            details=(
                f"Variable classification rate is {rate * 100:.1f}% "
                f"(threshold: {variable_rate_threshold * 100:.0f}%)"
            ),
            recommendation="Analyze Variable cases for potential new archetype patterns",
            affected_residents=[str(c.get("resident_id")) for c in variable],
            supporting_metrics={"variable_rate": rate, "variable_count": len(variable)},
        ))

    complete = [c for c in variable if _num(c, "pgy3_percentile", "pgy3") is not None]
    if len(complete) >= min_cluster_members:
        clusters = detect_pattern_clusters(complete, min_cluster_members)
        if clusters:
            triggers.append(EvolutionTrigger(
                type="pattern_discovery",
                details=f"{len(clusters)} potential new pattern(s) detected in Variable cases",
                recommendation=(
                    "Consider adding archetype(s): "
                    + ", ".join(c.suggested_name for c in clusters)
                ),
                affected_residents=[r for c in clusters for r in c.residents],
                supporting_metrics={"clusters": [c.to_dict() for c in clusters]},
            ))

    logger.info("Evolution check for %d classification(s): %d trigger(s)", len(classifications), len(triggers))
    return triggers


# ── Versions ────────────────────────────────────────────────────────

def compare_across_versions(series: ScoreSeries, catalogs: Iterable[ArchetypeCatalog]) -> List[Dict[str, Any]]:
    """How the same series classifies under each catalog version."""
    out = []
    for catalog in catalogs:
        c = classify_series(series, catalog)
        out.append({
            "version": catalog.version,
            "archetype_id": c.archetype_id,
            "archetype_name": c.archetype_name,
            "confidence": c.confidence,
            "risk_level": c.risk_level.value,
        })
    return out


def next_methodology_version(
    current: str,
    added: int = 0,
    removed: int = 0,
    modified: int = 0,
) -> str:
    """Major for added/removed archetypes, minor for threshold edits, patch otherwise."""
    try:
        major, minor, patch = (int(p) for p in current.split("."))
    except ValueError:
        raise ValueError(f"Methodology version {current!r} is not MAJOR.MINOR.PATCH") from None
    if added or removed:
        return f"{major + 1}.0.0"
    if modified:
        return f"{major}.{minor + 1}.0"
    return f"{major}.{minor}.{patch + 1}"


def propose_catalog(
    catalog: ArchetypeCatalog,
    new_archetypes: Optional[Dict[int, List[Dict[str, Any]]]] = None,
    removed: Optional[List[str]] = None,
    threshold_changes: Optional[Dict[str, Dict[str, Dict[str, float]]]] = None,
    name: Optional[str] = None,
) -> ArchetypeCatalog:
    """
    A new catalog version derived from ``catalog``.

    ``new_archetypes`` is keyed by data years and appended after the existing
    entries but ahead of the fallback; ``threshold_changes`` maps an
    archetype id to replacement bounds per metric. The result is validated
    like any loaded catalog.
    """
    data = copy.deepcopy(catalog.to_dict())
    removed = set(removed or [])
    threshold_changes = threshold_changes or {}
    new_archetypes = new_archetypes or {}

    added_count = sum(len(v) for v in new_archetypes.values())
    modified_count = 0
    for key, entries in list(data["rule_sets"].items()):
        kept = [e for e in entries if e["id"] not in removed]
        for entry in kept:
            if entry["id"] in threshold_changes:
                entry["criteria"].update(copy.deepcopy(threshold_changes[entry["id"]]))
                modified_count += 1
        extra = [dict(e) for e in new_archetypes.get(int(key), [])]
        fallback = [e for e in kept if not e["criteria"]]
        ordered = [e for e in kept if e["criteria"]] + extra + fallback
        data["rule_sets"][key] = ordered
    for years, entries in new_archetypes.items():
        if str(years) not in data["rule_sets"]:
            data["rule_sets"][str(years)] = [dict(e) for e in entries]

    version = next_methodology_version(
        catalog.version,
        added=added_count,
        removed=len(removed),
        modified=modified_count,
    )
    data["version"] = version
    data["name"] = name or f"{catalog.name.rsplit(' v', 1)[0]} v{version}"
    return catalog_from_dict(data)
