"""
Suitability scoring from fixed lookup tables.
"""

from dataclasses import dataclass

import numpy as np
import pandas as pd

from .metrics import MetricRecord


class ScoreTable:
    """
    A hand-authored piecewise score table over an integer domain.

    The table is given as breakpoints and expanded once into a dense array,
    so every integer in the domain maps to the score of its nearest
    breakpoint (the lower breakpoint wins a tie). Lookups are then a plain
    index into that array.
    """

    def __init__(self, name: str, points: dict[int, int], domain: tuple[int, int]):
        """
        Args:
            name: Table name, used in error messages
            points: Breakpoint value -> score
            domain: Inclusive (low, high) range of valid inputs
        """
        lo, hi = domain
        if not points:
            raise ValueError(f"Score table '{name}' has no breakpoints")
        if lo > hi:
            raise ValueError(f"Score table '{name}' has an empty domain {domain}")

        keys = np.array(sorted(points), dtype=np.int64)
        if keys[0] > lo or keys[-1] < hi:
            raise ValueError(
                f"Score table '{name}' breakpoints {keys[0]}..{keys[-1]} "
                f"do not cover domain {lo}..{hi}"
            )

        values = np.array([points[k] for k in keys], dtype=np.int64)
        domain_values = np.arange(lo, hi + 1)
        # Index of the first breakpoint >= value; step back when the lower one is closer or tied
        idx = np.searchsorted(keys, domain_values)
        idx = np.clip(idx, 0, len(keys) - 1)
        lower = np.clip(idx - 1, 0, len(keys) - 1)
        use_lower = np.abs(domain_values - keys[lower]) <= np.abs(keys[idx] - domain_values)

        self.name = name
        self.domain = (lo, hi)
        self._scores = np.where(use_lower, values[lower], values[idx])
        self.range = (int(self._scores.min()), int(self._scores.max()))

    def score(self, value: int) -> int:
        lo, hi = self.domain
        if not lo <= value <= hi:
            raise ValueError(f"{value} is outside the '{self.name}' table domain {lo}..{hi}")
        return int(self._scores[int(round(value)) - lo])

    def score_array(self, values) -> np.ndarray:
        """Vectorised lookup for a column of integer values."""
        values = np.asarray(values, dtype=np.int64)
        lo, hi = self.domain
        if values.size and (values.min() < lo or values.max() > hi):
            raise ValueError(f"Values outside the '{self.name}' table domain {lo}..{hi}")
        return self._scores[values - lo]

    def __repr__(self) -> str:
        return f"ScoreTable({self.name!r}, domain={self.domain}, range={self.range})"


# Peaks at 50 and falls off linearly to 0 at both extremes
DENSITY_TABLE = ScoreTable(
    "density",
    {0: 0, 10: 2, 20: 4, 30: 6, 40: 8, 50: 10, 60: 8, 70: 6, 80: 4, 90: 2, 100: 0},
    domain=(0, 100),
)

# Stronger dominance of one tree type scores higher
DOMINANCE_TABLE = ScoreTable(
    "dominance",
    {0: 0, 20: 2, 40: 4, 60: 6, 80: 8, 100: 10},
    domain=(0, 100),
)

CLASS_COUNT_TABLE = ScoreTable(
    "class_count",
    {1: 0, 2: 10, 3: 8, 4: 4, 5: 0, 6: 0, 7: 0, 8: 0, 9: 0, 10: 0},
    domain=(1, 10),
)

# Score column -> (metric column, table)
SCORE_COLUMNS = {
    "dominance_score": ("dominance", DOMINANCE_TABLE),
    "hrl_forest_score": ("hrl_forest_pct", DENSITY_TABLE),
    "clc_forest_score": ("clc_forest_pct", DENSITY_TABLE),
    "class_count_score": ("clc_class_count", CLASS_COUNT_TABLE),
    "density_score": ("density", DENSITY_TABLE),
}


@dataclass(frozen=True)
class ScoreRecord:
    dominance_score: int
    hrl_forest_score: int
    clc_forest_score: int
    class_count_score: int
    density_score: int

    @property
    def total(self) -> int:
        return (
            self.dominance_score
            + self.hrl_forest_score
            + self.clc_forest_score
            + self.class_count_score
            + self.density_score
        )


def score_metrics(record: MetricRecord) -> ScoreRecord:
    """Score a single candidate's metrics."""
    return ScoreRecord(**{
        column: table.score(getattr(record, metric))
        for column, (metric, table) in SCORE_COLUMNS.items()
    })


def score_frame(df: pd.DataFrame) -> pd.DataFrame:
    """
    Add the five sub-score columns and total_score to a frame of metrics.

    Returns:
        A copy of df with the score columns appended
    """
    df = df.copy()
    for column, (metric, table) in SCORE_COLUMNS.items():
        df[column] = table.score_array(df[metric].to_numpy()).astype(np.int64)
    df["total_score"] = df[list(SCORE_COLUMNS)].sum(axis=1).astype(np.int64)
    return df
