"""
Survey Site Selection

Select a small, spatially representative set of survey sites from a lattice
of candidate polygons using tree cover density, tree type and land cover
rasters, and generate disjoint validation sites.
"""

from .config import SelectionConfig
from .grid import generate_grid
from .metrics import MetricRecord, Rejection, RejectReason, extract_metrics
from .scoring import ScoreRecord, ScoreTable, score_frame, score_metrics
from .selection import TileSelection, assign_areas, sample_sites, select_tiles
from .validation import attach_density, generate_validation_sites
from .pipeline import SelectionResult, build_validation_sites, select_sites

__all__ = [
    "SelectionConfig",
    "generate_grid",
    "MetricRecord",
    "Rejection",
    "RejectReason",
    "extract_metrics",
    "ScoreRecord",
    "ScoreTable",
    "score_frame",
    "score_metrics",
    "TileSelection",
    "assign_areas",
    "sample_sites",
    "select_tiles",
    "attach_density",
    "generate_validation_sites",
    "SelectionResult",
    "build_validation_sites",
    "select_sites",
]
