"""
Tests for core/series.py — period label parsing, percentile cleaning, ordering.
"""

import os
import sys
import pytest
import pandas as pd

# Ensure backend/ is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from core.errors import (
    DuplicateYearError,
    MalformedPeriodLabel,
    NormalizationError,
    PercentileRangeError,
)
from core.series import (
    ScorePoint,
    ScoreSeries,
    normalize_score_records,
    series_from_percentiles,
    series_from_points,
    training_year_from_label,
)

SAMPLE_CSV = os.path.join(os.path.dirname(__file__), "..", "sample_data", "ite_scores.csv")


@pytest.fixture
def sample_df():
    return pd.read_csv(SAMPLE_CSV)


class TestTrainingYearFromLabel:

    @pytest.mark.parametrize("label,expected", [
        ("PGY-1", 1),
        ("pgy 2", 2),
        ("PGY3", 3),
        ("3", 3),
        (2, 2),
        (3.0, 3),
    ])
    def test_reads_year(self, label, expected):
        assert training_year_from_label(label) == expected

    def test_no_digit_is_malformed(self):
        with pytest.raises(MalformedPeriodLabel):
            training_year_from_label("Intern year")

    def test_year_zero_is_malformed(self):
        with pytest.raises(MalformedPeriodLabel):
            training_year_from_label("PGY-0")

    def test_empty_label_is_malformed(self):
        with pytest.raises(MalformedPeriodLabel):
            training_year_from_label(None)

    def test_malformed_is_a_value_error(self):
        with pytest.raises(ValueError):
            training_year_from_label("n/a")


class TestNormalizeScoreRecords:

    def test_sorted_and_unique(self):
        records = [
            {"pgy_level": "PGY-3", "percentile": 70},
            {"pgy_level": "PGY-1", "percentile": 30},
            {"pgy_level": "pgy 2", "percentile": 65},
        ]
        series = normalize_score_records(records)
        assert series.year_indices == [0, 1, 2]
        assert series.is_well_formed()
        assert series.percentile_for(1) == 65.0

    def test_missing_percentile_dropped_not_imputed(self):
        records = [
            {"pgy_level": "PGY-1", "percentile": 40},
            {"pgy_level": "PGY-2", "percentile": None},
        ]
        series = normalize_score_records(records)
        assert series.year_indices == [0]
        assert series.percentile_for(1) is None

    def test_non_numeric_percentile_dropped(self):
        records = [
            {"pgy_level": "PGY-1", "percentile": "not taken"},
            {"pgy_level": "PGY-2", "percentile": "55"},
        ]
        series = normalize_score_records(records)
        assert series.to_list() == [{"year_index": 1, "percentile": 55.0}]

    def test_duplicate_year_rejected(self):
        records = [
            {"pgy_level": "PGY-1", "percentile": 40},
            {"pgy_level": "1", "percentile": 42},
        ]
        with pytest.raises(DuplicateYearError) as exc:
            normalize_score_records(records)
        assert exc.value.year_index == 0

    def test_percentile_out_of_range(self):
        with pytest.raises(PercentileRangeError):
            normalize_score_records([{"pgy_level": "PGY-1", "percentile": 120}])

    def test_malformed_label_propagates(self):
        with pytest.raises(MalformedPeriodLabel):
            normalize_score_records([{"pgy_level": "Orientation", "percentile": 50}])

    def test_empty_input_gives_empty_series(self):
        series = normalize_score_records([])
        assert len(series) == 0
        assert series.data_years == 0

    def test_missing_percentile_column(self):
        with pytest.raises(NormalizationError):
            normalize_score_records([{"pgy_level": "PGY-1", "score": 50}])

    def test_column_aliases(self):
        records = [
            {"Training_Year": "PGY-2", "ITE_Percentile": 61},
            {"Training_Year": "PGY-1", "ITE_Percentile": 48},
        ]
        series = normalize_score_records(records)
        assert series.to_dict() == {"pgy1": 48.0, "pgy2": 61.0}

    def test_explicit_columns(self):
        records = [{"exam": "PGY-1", "pct_rank": 33, "percentile": 99}]
        series = normalize_score_records(records, period_col="exam", percentile_col="pct_rank")
        assert series.percentile_for(0) == 33.0

    def test_dataframe_input(self, sample_df):
        r002 = sample_df[sample_df["resident_id"] == "R002"]
        series = normalize_score_records(r002)
        assert series.to_dict() == {"pgy1": 30.0, "pgy2": 65.0, "pgy3": 80.0}

    def test_every_sample_resident_normalizes(self, sample_df):
        for resident_id, rows in sample_df.groupby("resident_id"):
            series = normalize_score_records(rows)
            assert series.is_well_formed(), resident_id

    def test_sample_blank_score_is_dropped(self, sample_df):
        r005 = sample_df[sample_df["resident_id"] == "R005"]
        assert normalize_score_records(r005).year_indices == [0]


class TestBuilders:

    def test_from_percentiles_with_gap(self):
        series = series_from_percentiles(50, None, 70)
        assert series.year_indices == [0, 2]

    def test_from_percentiles_all_missing(self):
        assert len(series_from_percentiles()) == 0

    def test_from_points(self):
        series = series_from_points([
            {"year_index": 1, "percentile": 65},
            {"year_index": 0, "percentile": 30},
        ])
        assert series.year_indices == [0, 1]

    def test_points_are_immutable(self):
        point = ScorePoint(0, 40.0)
        with pytest.raises(Exception):
            point.percentile = 50.0

    def test_unsorted_series_is_not_well_formed(self):
        series = ScoreSeries((ScorePoint(1, 50.0), ScorePoint(0, 40.0)))
        assert not series.is_well_formed()
