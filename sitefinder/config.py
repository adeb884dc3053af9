"""
Pipeline configuration.
"""

from dataclasses import dataclass, field
from typing import Optional

from joblib import cpu_count


# Equal-area reference system for the whole study region (ETRS89-LAEA)
PIPELINE_CRS = "EPSG:3035"

# 400 m x 400 m = 16 ha candidate cells
CELL_SIZE = 400.0

# Number of selected tiles / final sites
N_TILES = 150

# Validation sites sampled per target area
N_VALIDATION = 20


def default_n_jobs() -> int:
    """Worker count: all cores but one, leaving the orchestrating process room."""
    return max(1, cpu_count() - 1)


@dataclass(frozen=True)
class SelectionConfig:
    """All thresholds and constants used by the selection pipeline."""

    crs: str = PIPELINE_CRS
    cell_size: float = CELL_SIZE

    # Hard reject thresholds (inclusive bounds of the accepted range)
    density_range: tuple[int, int] = (10, 90)
    hrl_forest_range: tuple[int, int] = (10, 90)
    clc_forest_range: tuple[int, int] = (10, 90)
    min_type_categories: int = 2
    min_clc_classes: int = 2
    excluded_clc_class_counts: tuple[int, ...] = (5,)
    forest_label: str = "Forests"

    # Tree type raster codes
    broadleaved_code: int = 1
    coniferous_code: int = 2

    # Selection
    n_tiles: int = N_TILES
    area_size: float = 10_000.0

    # Validation
    n_validation: int = N_VALIDATION
    target_resolution: float = 1_000.0
    exclusion_radius: float = 2_000.0
    outer_radius: float = 10_000.0
    validation_seed: int = 42
    reseed_per_area: bool = True
    max_density: float = 100.0

    # Execution
    n_jobs: int = field(default_factory=default_n_jobs)
    batch_size: Optional[int] = None
    overwrite: bool = False

    def __post_init__(self):
        if self.cell_size <= 0:
            raise ValueError(f"cell_size must be positive, got {self.cell_size}")
        if self.n_tiles < 1:
            raise ValueError(f"n_tiles must be at least 1, got {self.n_tiles}")
        if self.target_resolution <= 0:
            raise ValueError("target_resolution must be positive")
        if self.outer_radius <= self.exclusion_radius:
            raise ValueError(
                f"outer_radius ({self.outer_radius}) must exceed "
                f"exclusion_radius ({self.exclusion_radius})"
            )
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be at least 1, got {self.n_jobs}")
