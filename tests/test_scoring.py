"""
Tests for the score tables and score aggregation.
"""

import numpy as np
import pandas as pd
import pytest

from sitefinder.metrics import MetricRecord
from sitefinder.scoring import (
    CLASS_COUNT_TABLE,
    DENSITY_TABLE,
    DOMINANCE_TABLE,
    SCORE_COLUMNS,
    ScoreTable,
    score_frame,
    score_metrics,
)


def make_record(**overrides) -> MetricRecord:
    values = dict(
        density=50,
        dominance=60,
        dominant_type="broadleaved",
        hrl_forest_pct=40,
        clc_forest_pct=70,
        clc_class_count=3,
        secondary_class="Agricultural areas",
    )
    values.update(overrides)
    return MetricRecord(**values)


class TestScoreTable:

    def test_density_peaks_at_50(self):
        scores = [DENSITY_TABLE.score(v) for v in range(101)]
        assert max(scores) == DENSITY_TABLE.score(50) == 10
        assert DENSITY_TABLE.score(0) == DENSITY_TABLE.score(100) == 0

    def test_density_is_symmetric(self):
        for k in range(0, 51, 10):
            assert DENSITY_TABLE.score(50 - k) == DENSITY_TABLE.score(50 + k)

    def test_nearest_breakpoint(self):
        assert DENSITY_TABLE.score(44) == 8
        assert DENSITY_TABLE.score(46) == 10

    def test_tie_uses_lower_breakpoint(self):
        assert DENSITY_TABLE.score(45) == DENSITY_TABLE.score(40)
        assert DENSITY_TABLE.score(55) == DENSITY_TABLE.score(50)

    def test_dominance_is_monotonic(self):
        scores = DOMINANCE_TABLE.score_array(np.arange(101))
        assert np.all(np.diff(scores) >= 0)
        assert scores[0] == 0
        assert scores[-1] == 10

    def test_class_count(self):
        assert CLASS_COUNT_TABLE.score(1) == 0
        assert CLASS_COUNT_TABLE.score(2) == 10
        assert CLASS_COUNT_TABLE.score(3) == 8
        assert CLASS_COUNT_TABLE.score(2) > CLASS_COUNT_TABLE.score(4) > 0
        assert all(CLASS_COUNT_TABLE.score(n) == 0 for n in range(5, 11))

    def test_out_of_domain_raises(self):
        with pytest.raises(ValueError):
            DENSITY_TABLE.score(101)
        with pytest.raises(ValueError):
            CLASS_COUNT_TABLE.score(0)
        with pytest.raises(ValueError):
            DENSITY_TABLE.score_array([50, -1])

    def test_uncovered_domain_rejected_at_construction(self):
        with pytest.raises(ValueError):
            ScoreTable("partial", {10: 1, 50: 2}, domain=(0, 100))
        with pytest.raises(ValueError):
            ScoreTable("empty", {}, domain=(0, 10))

    def test_range(self):
        assert DENSITY_TABLE.range == (0, 10)
        table = ScoreTable("steps", {0: 3, 5: 7}, domain=(0, 5))
        assert table.range == (3, 7)


class TestScoreMetrics:

    def test_total_is_sum_of_components(self):
        scores = score_metrics(make_record())
        assert scores.dominance_score == 6
        assert scores.hrl_forest_score == 8
        assert scores.clc_forest_score == 6
        assert scores.class_count_score == 8
        assert scores.density_score == 10
        assert scores.total == 38

    def test_frame_scores_match_records(self):
        records = [
            make_record(),
            make_record(density=10, dominance=0, clc_class_count=2),
            make_record(density=90, hrl_forest_pct=90, clc_class_count=6),
        ]
        df = pd.DataFrame([r.to_dict() for r in records])
        scored = score_frame(df)

        for i, record in enumerate(records):
            expected = score_metrics(record)
            assert scored.loc[i, "total_score"] == expected.total
            assert scored.loc[i, "density_score"] == expected.density_score

        components = scored[list(SCORE_COLUMNS)]
        assert (components.sum(axis=1) == scored["total_score"]).all()
        for column, (_, table) in SCORE_COLUMNS.items():
            lo, hi = table.range
            assert scored[column].between(lo, hi).all()

    def test_frame_is_not_modified(self):
        df = pd.DataFrame([make_record().to_dict()])
        score_frame(df)
        assert "total_score" not in df.columns
