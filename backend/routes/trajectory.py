"""
Trajectory routes — ITE classification, similar residents, drift and trendlines.

Every payload carries the data it needs; nothing is fetched here.
"""

import os
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException

from core.archetypes import CatalogProvider
from core.classifier import Classification
from core.drift import ClassificationResult, classify_resident, detect_drift, history_trigger, summarize_drift
from core.methodology import check_evolution_triggers
from core.series import (
    ScoreSeries,
    normalize_score_records,
    series_from_percentiles,
    series_from_points,
)
from core.similarity import (
    DEFAULT_LIMIT,
    DEFAULT_THRESHOLD,
    HistoricalResident,
    find_similar_residents,
)
from core.trendlines import (
    PeriodOrdering,
    averages_to_points,
    build_trendlines,
    cohort_period_averages,
    resident_attribute_points,
    trendlines_to_dict,
)

router = APIRouter()

_provider: Optional[CatalogProvider] = None
_provider_lock = threading.Lock()


def get_catalog_provider() -> CatalogProvider:
    """Process-wide catalog, loaded from ARCHETYPE_CATALOG_PATH on first use."""
    global _provider
    if _provider is None:
        with _provider_lock:
            if _provider is None:
                _provider = CatalogProvider(path=os.getenv("ARCHETYPE_CATALOG_PATH") or None)
    return _provider


# ── Payload helpers ─────────────────────────────────────────────────

def _series_from_payload(payload: dict) -> ScoreSeries:
    """Accepts raw exam 'records', normalized 'points' or stored pgy 'scores'."""
    if "records" in payload:
        return normalize_score_records(
            payload.get("records") or [],
            period_col=payload.get("period_column"),
            percentile_col=payload.get("percentile_column"),
        )
    if "points" in payload:
        return series_from_points(payload.get("points") or [])
    if "scores" in payload:
        scores = payload.get("scores") or {}
        return series_from_percentiles(scores.get("pgy1"), scores.get("pgy2"), scores.get("pgy3"))
    raise HTTPException(400, "Provide 'records', 'points' or 'scores'.")


def _stored_classification(raw: Optional[dict], what: str) -> Optional[Classification]:
    if not raw:
        return None
    try:
        return Classification.from_dict(raw)
    except (ValueError, TypeError) as e:
        raise HTTPException(400, f"Invalid {what} classification: {str(e)}")


def _points_by_attribute(raw: Any, rows_are_averages: bool) -> Dict[str, Any]:
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    if rows_are_averages:
        return averages_to_points(raw)
    return resident_attribute_points(raw)


# ── Classification ──────────────────────────────────────────────────

@router.post("/classify/{resident_id}")
async def classify(resident_id: str, payload: dict, provider: CatalogProvider = Depends(get_catalog_provider)):
    """Archetype, confidence, risk, alternatives and drift for one resident."""
    catalog = provider.current
    series = _series_from_payload(payload)
    original = _stored_classification(payload.get("original"), "original")
    previous = _stored_classification(payload.get("previous"), "previous")
    result = classify_resident(series, catalog, original=original, previous=previous)
    return {"resident_id": resident_id, **result.to_dict()}


@router.post("/similar/{resident_id}")
async def similar(resident_id: str, payload: dict, provider: CatalogProvider = Depends(get_catalog_provider)):
    """Historical residents with the closest ITE trajectory."""
    corpus_raw = payload.get("corpus")
    if corpus_raw is None:
        raise HTTPException(400, "Provide a 'corpus' of historical residents.")

    catalog = provider.current
    series = _series_from_payload(payload)
    corpus = [HistoricalResident.from_dict(r) for r in corpus_raw]
    limit = int(payload.get("limit") or os.getenv("SIMILAR_RESIDENTS_LIMIT", str(DEFAULT_LIMIT)))
    threshold = float(payload.get("threshold") or os.getenv("SIMILARITY_THRESHOLD", str(DEFAULT_THRESHOLD)))

    matches = find_similar_residents(
        resident_id, series, corpus, catalog,
        limit=limit,
        threshold=threshold,
        subject_archetype_id=payload.get("archetype_id"),
    )
    return {
        "resident_id": resident_id,
        "similar_residents": [m.to_dict() for m in matches],
    }


# ── Trendlines ──────────────────────────────────────────────────────

@router.post("/trendlines")
async def trendlines(payload: dict):
    """
    Per-attribute trendlines for a resident against class and program.

    'resident' is the resident's period score rows (with ai_scores_detail)
    or an {attribute: [{period, score}]} map; 'class' and 'program' are
    average rows or maps. Given 'cohort_records' instead, the averages are
    computed here.
    """
    resident = _points_by_attribute(payload.get("resident"), rows_are_averages=False)
    class_year = payload.get("class_year")
    class_points = _points_by_attribute(payload.get("class"), rows_are_averages=True)
    program_points = _points_by_attribute(payload.get("program"), rows_are_averages=True)

    cohort = payload.get("cohort_records")
    if cohort:
        if not program_points:
            program_points = averages_to_points(cohort_period_averages(cohort, "program"))
        if not class_points and class_year is not None:
            class_points = averages_to_points(cohort_period_averages(cohort, "class", class_year))

    if not (resident or class_points or program_points):
        raise HTTPException(400, "No attribute scores provided.")

    ordering = PeriodOrdering(payload.get("period_order"))
    lines = build_trendlines(
        resident, class_points, program_points,
        ordering=ordering,
        min_points=int(payload.get("min_points") or 1),
    )
    return {"class_year": class_year, "trendlines": trendlines_to_dict(lines)}


# ── Program-level review ────────────────────────────────────────────

@router.post("/drift-analysis")
async def drift_analysis(payload: dict, provider: CatalogProvider = Depends(get_catalog_provider)):
    """
    Drift summary across residents.

    Each entry has resident_id and original, plus either a stored 'current'
    classification or score data to classify under the active catalog.
    """
    entries = payload.get("results")
    if entries is None:
        raise HTTPException(400, "Provide 'results'.")

    catalog = provider.current
    results: List[ClassificationResult] = []
    ids: List[str] = []
    for entry in entries:
        original = _stored_classification(entry.get("original"), "original")
        if entry.get("current"):
            current = _stored_classification(entry["current"], "current")
            reason = detect_drift(original, current)
            result = ClassificationResult(
                original_classification=original or current,
                current_classification=current,
                has_version_drift=reason is not None,
                drift_reason=reason,
                history_entry=history_trigger(original, current),
            )
        else:
            result = classify_resident(_series_from_payload(entry), catalog, original=original)
        results.append(result)
        ids.append(str(entry.get("resident_id", len(ids))))

    return summarize_drift(results, ids)


@router.post("/evolution-triggers")
async def evolution_triggers(payload: dict, provider: CatalogProvider = Depends(get_catalog_provider)):
    """Conditions suggesting the archetype methodology needs review."""
    classifications = payload.get("classifications")
    if classifications is None:
        raise HTTPException(400, "Provide 'classifications'.")
    current_year = int(payload.get("current_year") or datetime.now().year)
    triggers = check_evolution_triggers(
        classifications,
        current_year,
        variable_rate_threshold=float(payload.get("variable_rate_threshold") or 0.15),
        catalog=provider.current,
    )
    return {
        "methodology_version": provider.current.version,
        "triggers": [t.to_dict() for t in triggers],
    }


# ── Catalog ─────────────────────────────────────────────────────────

@router.get("/catalog")
async def catalog(provider: CatalogProvider = Depends(get_catalog_provider)):
    """The active archetype catalog."""
    return provider.current.to_dict()


@router.post("/catalog/reload")
async def reload_catalog(provider: CatalogProvider = Depends(get_catalog_provider)):
    """Re-read the configured catalog file (ARCHETYPE_CATALOG_PATH)."""
    previous = provider.current
    try:
        loaded = provider.reload()
    except (OSError, ValueError) as e:
        raise HTTPException(400, f"Could not read catalog: {str(e)}")
    return {
        "previous_version": previous.version,
        "version": loaded.version,
        "name": loaded.name,
    }
