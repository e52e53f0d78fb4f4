"""
Tests for core/classifier.py — archetype selection, confidence, risk, provisional notes.
"""

import logging
import math
import os
import sys
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.archetypes import RiskLevel, catalog_from_dict, default_catalog
from core.classifier import (
    AWAITING_DATA_ID,
    UNCLASSIFIED_ID,
    Classification,
    classify_series,
    classify_with_alternatives,
    compute_metrics,
    score_rule,
)
from core.errors import InvalidSeriesError
from core.series import (
    ScorePoint,
    ScoreSeries,
    normalize_score_records,
    series_from_percentiles,
    series_from_points,
)

RISK_ORDER = {RiskLevel.LOW: 0, RiskLevel.MODERATE: 1, RiskLevel.HIGH: 2}


@pytest.fixture
def catalog():
    return default_catalog()


class TestNoData:

    def test_awaiting_data(self, catalog):
        c = classify_series(ScoreSeries(), catalog)
        assert c.archetype_id == AWAITING_DATA_ID
        assert c.confidence == 0.0
        assert c.is_provisional
        assert c.data_years == 0
        assert c.risk_level == RiskLevel.LOW
        assert c.methodology_version == "1.0.0"

    def test_missing_pgy1_is_unclassified(self, catalog):
        c = classify_series(series_from_percentiles(None, 60, 70), catalog)
        assert c.archetype_id == UNCLASSIFIED_ID
        assert c.confidence == 0.0
        assert c.is_provisional
        assert c.data_years == 2
        assert "PGY1" in c.note


class TestOneYear:

    def test_average_start(self, catalog):
        c, alternatives = classify_with_alternatives(series_from_points([{"year_index": 0, "percentile": 40}]), catalog)
        assert c.archetype_id == "potential_average"
        assert c.is_provisional
        assert 0 < c.confidence < 1
        assert c.confidence == pytest.approx(0.297, abs=0.005)
        assert "refine" in c.note
        assert [a.archetype_id for a in alternatives] == ["potential_below_average"]

    @pytest.mark.parametrize("pgy1,expected", [
        (92, "potential_elite"),
        (70, "potential_strong"),
        (25, "potential_below_average"),
        (12, "potential_at_risk"),
    ])
    def test_bands(self, catalog, pgy1, expected):
        assert classify_series(series_from_percentiles(pgy1), catalog).archetype_id == expected

    def test_at_risk_is_high(self, catalog):
        assert classify_series(series_from_percentiles(12), catalog).risk_level == RiskLevel.HIGH


class TestTwoYears:

    def test_breakthrough(self, catalog):
        c, alternatives = classify_with_alternatives(series_from_percentiles(30, 65), catalog)
        assert c.metrics.delta12 == 35.0
        assert c.archetype_id == "breakthrough_performer"
        assert c.risk_level != RiskLevel.HIGH
        assert not c.escalated
        assert c.is_provisional
        assert c.confidence == pytest.approx(0.3685, abs=0.005)
        assert alternatives[0].archetype_id == "trending_peak"

    def test_large_drop_escalates_risk(self, catalog):
        c = classify_series(series_from_percentiles(80, 45), catalog)
        # slump and decline tie on score; catalog order picks the slump
        assert c.archetype_id == "trending_slump"
        assert c.escalated
        assert c.risk_level == RiskLevel.HIGH

    def test_small_drop_does_not_escalate(self, catalog):
        c = classify_series(series_from_percentiles(80, 62), catalog)
        assert not c.escalated
        assert c.risk_level == catalog.get(c.archetype_id, data_years=2).default_risk_level

    def test_provisional_note_keeps_archetype_note(self, catalog):
        c = classify_series(series_from_percentiles(30, 65), catalog)
        assert c.note.startswith(catalog.get("breakthrough_performer", 2).note)


class TestThreeYears:

    def test_elite_not_provisional(self, catalog):
        c = classify_series(series_from_percentiles(88, 90, 72), catalog)
        assert c.archetype_id == "elite_performer"
        assert not c.is_provisional
        assert c.data_years == 3

    def test_peak_decline(self, catalog):
        c = classify_series(series_from_percentiles(55, 70, 35), catalog)
        assert c.archetype_id == "peak_decline"
        assert c.risk_level == RiskLevel.HIGH

    def test_decline_riskier_than_flat(self, catalog):
        declining = classify_series(series_from_points([
            {"year_index": 0, "percentile": 80},
            {"year_index": 1, "percentile": 45},
            {"year_index": 2, "percentile": 40},
        ]), catalog)
        flat = classify_series(series_from_percentiles(80, 80, 80), catalog)
        assert RISK_ORDER[declining.risk_level] > RISK_ORDER[flat.risk_level]

    def test_flat_falls_back_to_variable(self, catalog):
        c, alternatives = classify_with_alternatives(series_from_percentiles(80, 80, 80), catalog)
        assert c.archetype_id == "variable"
        assert all(a.archetype_id != "variable" for a in alternatives)

    def test_complete_data_never_escalates(self, catalog):
        c = classify_series(series_from_percentiles(90, 85, 40), catalog)
        assert not c.escalated

    def test_scores_beyond_pgy3_ignored(self, catalog):
        series = ScoreSeries((
            ScorePoint(0, 88.0), ScorePoint(1, 90.0), ScorePoint(2, 72.0), ScorePoint(3, 10.0),
        ))
        c = classify_series(series, catalog)
        assert c.data_years == 3
        assert c.archetype_id == "elite_performer"

    def test_far_year_logs_warning(self, catalog, caplog):
        series = normalize_score_records([
            {"pgy_level": "PGY-1", "percentile": 60},
            {"pgy_level": "PGY2 (2023)", "percentile": 70},
        ])
        with caplog.at_level(logging.WARNING, logger="core.classifier"):
            c = classify_series(series, catalog)
        assert c.data_years == 1
        assert "beyond PGY3" in caplog.text
        assert "22022" in caplog.text


class TestGaps:

    def test_no_delta_across_gap(self):
        m = compute_metrics(series_from_percentiles(50, None, 70))
        assert m.delta12 is None
        assert m.delta23 is None
        assert m.delta_total is None

    def test_gap_uses_prefix_rule_set(self, catalog):
        c = classify_series(series_from_percentiles(50, None, 70), catalog)
        assert c.data_years == 2
        assert c.archetype_id == "potential_average"
        assert c.is_provisional
        assert "PGY2 missing" in c.note


class TestProperties:

    GRID = [
        (p1, p2, p3)
        for p1 in (5, 35, 60, 90)
        for p2 in (None, 20, 55, 95)
        for p3 in (None, 10, 50, 99)
    ]

    def test_confidence_in_unit_interval(self, catalog):
        for scores in self.GRID:
            c = classify_series(series_from_percentiles(*scores), catalog)
            assert 0.0 <= c.confidence <= 1.0, scores

    def test_provisional_iff_incomplete(self, catalog):
        for scores in self.GRID:
            c = classify_series(series_from_percentiles(*scores), catalog)
            assert c.is_provisional == (c.data_years < 3), scores
            if c.is_provisional:
                assert c.note

    def test_alternatives_ranked_and_capped(self, catalog):
        for scores in self.GRID:
            c, alternatives = classify_with_alternatives(series_from_percentiles(*scores), catalog)
            confidences = [a.confidence for a in alternatives]
            assert confidences == sorted(confidences, reverse=True)
            assert len(alternatives) <= catalog.max_alternatives
            assert c.archetype_id not in [a.archetype_id for a in alternatives]

    def test_idempotent(self, catalog):
        series = series_from_percentiles(30, 65, 80)
        assert classify_series(series, catalog).to_dict() == classify_series(series, catalog).to_dict()


class TestCatalogDriven:

    def _catalog(self, **overrides):
        data = {
            "version": "9.0.0",
            "rule_sets": {
                "1": [
                    {"id": "first", "name": "First", "color": "#111111", "risk_level": "Low",
                     "description": "a", "criteria": {"pgy1": {"min": 0}}, "weight": 0.5},
                    {"id": "second", "name": "Second", "color": "#222222", "risk_level": "High",
                     "description": "b", "criteria": {"pgy1": {"max": 100}}, "weight": 0.5},
                ],
            },
        }
        data.update(overrides)
        return catalog_from_dict(data)

    def test_tie_goes_to_catalog_order(self):
        c = classify_series(series_from_percentiles(50), self._catalog())
        assert c.archetype_id == "first"
        assert c.methodology_version == "9.0.0"

    def test_missing_rule_set_is_unclassified(self):
        c = classify_series(series_from_percentiles(50, 60), self._catalog())
        assert c.archetype_id == UNCLASSIFIED_ID


class TestInvariants:

    def test_unsorted_series_rejected(self, catalog):
        series = ScoreSeries((ScorePoint(1, 50.0), ScorePoint(0, 40.0)))
        with pytest.raises(InvalidSeriesError):
            classify_series(series, catalog)

    def test_duplicate_year_rejected(self, catalog):
        series = ScoreSeries((ScorePoint(0, 50.0), ScorePoint(0, 40.0)))
        with pytest.raises(InvalidSeriesError):
            classify_series(series, catalog)


class TestSerialization:

    def test_round_trip(self, catalog):
        c = classify_series(series_from_percentiles(30, 65), catalog)
        assert Classification.from_dict(c.to_dict()) == c

    def test_from_dict_requires_years_or_metrics(self):
        with pytest.raises(ValueError):
            Classification.from_dict({
                "archetype_id": "variable",
                "archetype_name": "Variable",
                "methodology_version": "1.0.0",
            })

    def test_from_dict_derives_years_from_metrics(self):
        c = Classification.from_dict({
            "archetype_id": "potential_average",
            "archetype_name": "Potential: Average Start",
            "methodology_version": "1.0.0",
            "metrics": {"pgy1": 40},
        })
        assert c.data_years == 1
        assert c.is_provisional


class TestScoreRule:

    def test_full_match_scores_weight(self, catalog):
        elite = catalog.get("elite_performer")
        metrics = compute_metrics(series_from_percentiles(90, 90, 70))
        assert score_rule(elite, metrics, catalog.softness) == pytest.approx(elite.weight)

    def test_partial_match_decays(self, catalog):
        elite = catalog.get("elite_performer")
        # pgy2 misses its 85 bound by 10 points
        metrics = compute_metrics(series_from_percentiles(90, 75, 70))
        expected = elite.weight * 0.5 * math.exp(-10 / catalog.softness)
        assert score_rule(elite, metrics, catalog.softness) == pytest.approx(expected)

    def test_missing_metric(self, catalog):
        elite = catalog.get("elite_performer")
        assert score_rule(elite, compute_metrics(series_from_percentiles(90, 90)), catalog.softness) is None
