"""
Per-candidate raster metrics.

Each candidate is evaluated in three steps (tree cover density, tree type,
land cover). Every step can reject the candidate, in which case the
remaining steps are skipped and a Rejection is returned instead of a
MetricRecord.
"""

import logging
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional, Union

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.errors import RasterioIOError
from shapely.geometry.base import BaseGeometry

from .config import SelectionConfig
from .layers import LayerPaths, crop_values

logger = logging.getLogger(__name__)


BROADLEAVED = "broadleaved"
CONIFEROUS = "coniferous"


class RejectReason(str, Enum):
    DENSITY = "density"
    TYPE_CATEGORIES = "type_categories"
    HRL_FOREST = "hrl_forest"
    CLC_NO_FOREST = "clc_no_forest"
    CLC_SINGLE_CLASS = "clc_single_class"
    CLC_FOREST = "clc_forest"
    CLC_CLASS_COUNT = "clc_class_count"
    NO_DATA = "no_data"
    READ_FAILURE = "read_failure"


@dataclass(frozen=True)
class MetricRecord:
    """Raster statistics of a retained candidate."""

    density: int
    dominance: int
    dominant_type: str
    hrl_forest_pct: int
    clc_forest_pct: int
    clc_class_count: int
    secondary_class: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Rejection:
    """Why a candidate was dropped."""

    reason: RejectReason
    detail: str = ""


MetricResult = Union[MetricRecord, Rejection]


def _round_pct(value: float) -> int:
    return int(np.round(value))


def _outside(value: int, bounds: tuple[int, int]) -> bool:
    lo, hi = bounds
    return value < lo or value > hi


def density_metric(values: np.ndarray, config: SelectionConfig) -> Union[int, Rejection]:
    """Mean tree cover density as an integer percentage."""
    if values.size == 0:
        return Rejection(RejectReason.NO_DATA, "no valid density pixels")

    density = _round_pct(values.mean())
    if _outside(density, config.density_range):
        return Rejection(RejectReason.DENSITY, f"density {density}")
    return density


def tree_type_metrics(values: np.ndarray, config: SelectionConfig) -> Union[tuple[int, str, int], Rejection]:
    """
    Dominance of broadleaved vs coniferous pixels.

    Returns:
        (dominance magnitude, dominant type, HRL forest percent)
    """
    categories, counts = np.unique(values, return_counts=True)
    if len(categories) < config.min_type_categories:
        return Rejection(RejectReason.TYPE_CATEGORIES, f"{len(categories)} tree type categories")

    total = counts.sum()
    fractions = dict(zip(categories.tolist(), (counts / total).tolist()))
    b = fractions.get(config.broadleaved_code, 0.0)
    c = fractions.get(config.coniferous_code, 0.0)
    if b + c == 0:
        return Rejection(RejectReason.TYPE_CATEGORIES, "no broadleaved or coniferous pixels")

    dominance = (b - c) / (b + c)
    dominant_type = BROADLEAVED if dominance > 0 else CONIFEROUS
    magnitude = _round_pct(abs(dominance) * 100)

    hrl_forest_pct = _round_pct((1 - (b - c)) * 100)
    if _outside(hrl_forest_pct, config.hrl_forest_range):
        return Rejection(RejectReason.HRL_FOREST, f"HRL forest percent {hrl_forest_pct}")

    return magnitude, dominant_type, hrl_forest_pct


def land_cover_metrics(
    values: np.ndarray,
    class_table: dict[int, str],
    config: SelectionConfig,
) -> Union[tuple[int, int, str], Rejection]:
    """
    Land cover composition over the coarse label set.

    Returns:
        (forest percent, class count, most frequent non-forest label)
    """
    codes, counts = np.unique(values, return_counts=True)

    by_label: dict[str, int] = {}
    for code, count in zip(codes.tolist(), counts.tolist()):
        label = class_table.get(int(code))
        if label is None:
            continue
        by_label[label] = by_label.get(label, 0) + count

    forest = config.forest_label
    if forest not in by_label:
        return Rejection(RejectReason.CLC_NO_FOREST, "no forest land cover")
    if len(by_label) == 1:
        return Rejection(RejectReason.CLC_SINGLE_CLASS, f"only '{forest}' present")

    class_count = len(by_label)
    total = sum(by_label.values())
    forest_pct = _round_pct(by_label[forest] / total * 100)

    if _outside(forest_pct, config.clc_forest_range):
        return Rejection(RejectReason.CLC_FOREST, f"land cover forest percent {forest_pct}")
    if class_count < config.min_clc_classes or class_count in config.excluded_clc_class_counts:
        return Rejection(RejectReason.CLC_CLASS_COUNT, f"{class_count} land cover classes")

    # Highest count first, label name breaks ties
    others = sorted(
        ((label, n) for label, n in by_label.items() if label != forest),
        key=lambda item: (-item[1], item[0]),
    )
    return forest_pct, class_count, others[0][0]


def extract_metrics(
    geometry: BaseGeometry,
    density_src: rasterio.io.DatasetReader,
    type_src: rasterio.io.DatasetReader,
    landcover_src: rasterio.io.DatasetReader,
    class_table: dict[int, str],
    config: SelectionConfig,
    geometry_crs: Optional[str] = None,
) -> MetricResult:
    """
    Compute the metrics of one candidate polygon.

    Args:
        geometry: Candidate polygon
        density_src: Open tree cover density raster
        type_src: Open tree type raster
        landcover_src: Open land cover raster
        class_table: Land cover code -> coarse label
        config: Thresholds
        geometry_crs: CRS of geometry if it may differ from the rasters

    Returns:
        MetricRecord, or a Rejection naming the first failed check
    """
    try:
        density = density_metric(crop_values(density_src, geometry, geometry_crs), config)
        if isinstance(density, Rejection):
            return density

        tree_type = tree_type_metrics(crop_values(type_src, geometry, geometry_crs), config)
        if isinstance(tree_type, Rejection):
            return tree_type

        land_cover = land_cover_metrics(
            crop_values(landcover_src, geometry, geometry_crs), class_table, config
        )
        if isinstance(land_cover, Rejection):
            return land_cover
    except RasterioIOError as e:
        return Rejection(RejectReason.READ_FAILURE, str(e))
    except ValueError as e:
        # Raised by the mask when the polygon does not overlap a raster
        return Rejection(RejectReason.NO_DATA, str(e))

    dominance, dominant_type, hrl_forest_pct = tree_type
    clc_forest_pct, clc_class_count, secondary_class = land_cover

    return MetricRecord(
        density=density,
        dominance=dominance,
        dominant_type=dominant_type,
        hrl_forest_pct=hrl_forest_pct,
        clc_forest_pct=clc_forest_pct,
        clc_class_count=clc_class_count,
        secondary_class=secondary_class,
    )


def extract_batch(
    candidates: gpd.GeoDataFrame,
    layers: LayerPaths,
    class_table: dict[int, str],
    config: SelectionConfig,
) -> dict[int, MetricResult]:
    """
    Evaluate a batch of candidates with one set of raster handles.

    Runs inside a worker process: the rasters are opened read-only here so
    every worker holds its own read context.

    Returns:
        Mapping of cell_id to MetricRecord or Rejection
    """
    results: dict[int, MetricResult] = {}

    try:
        with rasterio.open(layers.density) as density_src, \
                rasterio.open(layers.tree_type) as type_src, \
                rasterio.open(layers.land_cover) as landcover_src:
            geometry_crs = None
            if candidates.crs is not None:
                srcs = (density_src, type_src, landcover_src)
                if any(src.crs is not None and candidates.crs != src.crs for src in srcs):
                    geometry_crs = candidates.crs.to_string()

            for cell_id, geom in zip(candidates["cell_id"], candidates.geometry):
                results[int(cell_id)] = extract_metrics(
                    geom, density_src, type_src, landcover_src,
                    class_table, config, geometry_crs=geometry_crs,
                )
    except RasterioIOError as e:
        # A layer could not be opened: every unevaluated candidate in the batch fails
        failure = Rejection(RejectReason.READ_FAILURE, str(e))
        for cell_id in candidates["cell_id"]:
            results.setdefault(int(cell_id), failure)

    return results
