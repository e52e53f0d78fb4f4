"""
Tests for core/similarity.py — trajectory distance and similar-resident ranking.
"""

import math
import os
import sys
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.archetypes import default_catalog
from core.series import ScoreSeries, series_from_percentiles
from core.similarity import (
    HistoricalResident,
    find_similar_residents,
    trajectory_similarity,
)


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def subject():
    return series_from_percentiles(30, 65)


@pytest.fixture
def corpus():
    return [
        HistoricalResident("S", "Subject Self", 2026, series_from_percentiles(30, 65)),
        HistoricalResident("A", "Avery Cole", 2024, series_from_percentiles(32, 66, 80)),
        HistoricalResident("B", "Blake Moss", 2024, series_from_percentiles(85, 90, 92)),
        HistoricalResident("C", "Casey Park", 2025, series_from_percentiles(30, 65, 78)),
        HistoricalResident("D", "Drew Ortiz", 2025, series_from_percentiles(None, None, 70)),
        HistoricalResident("E", "Emery Shaw", 2023, series_from_percentiles(40, 60, 70)),
    ]


class TestTrajectorySimilarity:

    def test_identical(self):
        s = series_from_percentiles(30, 65, 80)
        assert trajectory_similarity(s, s) == pytest.approx(1.0)

    def test_no_shared_year(self):
        assert trajectory_similarity(series_from_percentiles(30), series_from_percentiles(None, 60)) is None

    def test_weighted_distance(self):
        # percentiles 0.3 each, delta12 0.4
        expected = 1 - 2 * math.sqrt(0.3 * 0.02 ** 2 + 0.3 * 0.01 ** 2 + 0.4 * 0.01 ** 2)
        score = trajectory_similarity(series_from_percentiles(30, 65), series_from_percentiles(32, 66))
        assert score == pytest.approx(expected)

    def test_single_shared_year(self):
        score = trajectory_similarity(series_from_percentiles(50), series_from_percentiles(60, 70))
        assert score == pytest.approx(0.8)

    def test_far_apart_clamps_to_zero(self):
        assert trajectory_similarity(series_from_percentiles(0), series_from_percentiles(100)) == 0.0


class TestFindSimilarResidents:

    def test_excludes_subject(self, subject, corpus, catalog):
        matches = find_similar_residents("S", subject, corpus, catalog)
        assert "S" not in [m.id for m in matches]

    def test_ranked_non_increasing(self, subject, corpus, catalog):
        matches = find_similar_residents("S", subject, corpus, catalog, threshold=0.0)
        scores = [m.similarity_score for m in matches]
        assert scores == sorted(scores, reverse=True)
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_closest_first(self, subject, corpus, catalog):
        matches = find_similar_residents("S", subject, corpus, catalog)
        assert {m.id for m in matches[:2]} == {"A", "C"}

    def test_threshold_filters(self, subject, corpus, catalog):
        ids = [m.id for m in find_similar_residents("S", subject, corpus, catalog)]
        assert "B" not in ids
        loose = [m.id for m in find_similar_residents("S", subject, corpus, catalog, threshold=0.0)]
        assert "B" in loose

    def test_score_equal_to_threshold_dropped(self, subject, catalog):
        other = series_from_percentiles(40, 60)
        plain = trajectory_similarity(subject, other)
        corpus = [HistoricalResident("X", "X", 2024, other)]
        assert find_similar_residents("S", subject, corpus, catalog, threshold=plain, archetype_bonus=0.0) == []
        kept = find_similar_residents("S", subject, corpus, catalog, threshold=plain - 1e-9, archetype_bonus=0.0)
        assert [m.id for m in kept] == ["X"]

    def test_no_overlap_skipped(self, subject, corpus, catalog):
        matches = find_similar_residents("S", subject, corpus, catalog, threshold=0.0)
        assert "D" not in [m.id for m in matches]

    def test_limit(self, subject, corpus, catalog):
        assert len(find_similar_residents("S", subject, corpus, catalog, limit=1, threshold=0.0)) == 1

    def test_ties_broken_by_id(self, subject, catalog):
        twins = [
            HistoricalResident("Z", "Zed", 2024, series_from_percentiles(30, 65)),
            HistoricalResident("M", "Em", 2024, series_from_percentiles(30, 65)),
        ]
        assert [m.id for m in find_similar_residents("S", subject, twins, catalog)] == ["M", "Z"]

    def test_empty_subject(self, corpus, catalog):
        assert find_similar_residents("S", ScoreSeries(), corpus, catalog) == []

    def test_corpus_archetype_classified_when_missing(self, subject, corpus, catalog):
        matches = find_similar_residents("S", subject, corpus, catalog)
        a = next(m for m in matches if m.id == "A")
        assert a.archetype_id == "breakthrough_performer"

    def test_archetype_bonus(self, subject, catalog):
        other = series_from_percentiles(40, 60)
        plain = trajectory_similarity(subject, other)
        corpus = [HistoricalResident("X", "X", 2024, other, archetype_id="breakthrough_performer")]
        match = find_similar_residents(
            "S", subject, corpus, catalog, subject_archetype_id="breakthrough_performer",
        )[0]
        assert match.similarity_score == pytest.approx(min(1.0, plain + 0.05))

    def test_archetype_resolved_from_name(self, subject, catalog):
        corpus = [HistoricalResident("Y", "Y", 2024, series_from_percentiles(31, 64), archetype_name="Breakthrough Performer")]
        match = find_similar_residents("S", subject, corpus, catalog)[0]
        assert match.archetype_id == "breakthrough_performer"


class TestHistoricalResidentFromDict:

    def test_stored_columns(self):
        r = HistoricalResident.from_dict({
            "id": "R9", "name": "Rowan", "class_year": 2024,
            "pgy1_percentile": 45, "pgy2_percentile": None, "pgy3_percentile": 70,
        })
        assert r.series.year_indices == [0, 2]
        assert r.class_year == 2024

    def test_points(self):
        r = HistoricalResident.from_dict({
            "resident_id": "R10", "full_name": "Quinn",
            "points": [{"year_index": 0, "percentile": 50}],
            "current_archetype": "Potential: Average Start",
        })
        assert r.id == "R10"
        assert r.name == "Quinn"
        assert r.archetype_name == "Potential: Average Start"
        assert r.class_year is None

    def test_to_dict(self, subject, corpus, catalog):
        d = find_similar_residents("S", subject, corpus, catalog)[0].to_dict()
        assert set(d) >= {"id", "name", "class_year", "similarity_score", "score_series", "archetype_name"}
