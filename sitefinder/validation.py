"""
Validation site generation.

Validation sites are sampled on a lattice around each target area's
footprint, outside an exclusion buffer around that footprint, so they never
overlap the area used for training.
"""

import logging
import zlib
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
import shapely
from rasterio.errors import RasterioIOError
from shapely.geometry.base import BaseGeometry

from .config import SelectionConfig
from .layers import crop_values

logger = logging.getLogger(__name__)


VALIDATION_COLUMNS = ["area_id", "point_id", "shortfall", "geometry"]


def lattice_offsets(spacing: float, outer_radius: float) -> np.ndarray:
    """
    Offsets k * spacing for |k| <= outer_radius / spacing, in both axes.

    Returns:
        Array of shape (n, 2), symmetric in both axes and both signs
    """
    k = int(np.floor(outer_radius / spacing + 1e-9))
    steps = np.arange(-k, k + 1) * spacing
    dx, dy = np.meshgrid(steps, steps)
    return np.column_stack([dx.ravel(), dy.ravel()])


def exclusion_zone(footprint: BaseGeometry, radius: float) -> BaseGeometry:
    """Footprint grown by radius with square corners."""
    return footprint.buffer(radius, cap_style="square", join_style="mitre")


def candidate_squares(
    footprint: BaseGeometry,
    study_area: BaseGeometry,
    config: SelectionConfig,
) -> np.ndarray:
    """
    All validation squares around one footprint that may be sampled.

    Returns:
        Array of square polygons outside the exclusion zone whose centre
        point lies inside the study area
    """
    centre = footprint.centroid
    offsets = lattice_offsets(config.target_resolution, config.outer_radius)
    xs = centre.x + offsets[:, 0]
    ys = centre.y + offsets[:, 1]

    half = config.target_resolution / 2
    squares = shapely.box(xs - half, ys - half, xs + half, ys + half)

    excluded = exclusion_zone(footprint, config.exclusion_radius)
    shapely.prepare(excluded)
    keep = ~shapely.intersects(squares, excluded)

    points = shapely.points(xs, ys)
    keep &= shapely.within(points, study_area)
    return squares[keep]


def generate_validation_sites(
    footprints: gpd.GeoDataFrame,
    study_area: BaseGeometry,
    config: SelectionConfig,
    id_column: str = "area_id",
) -> gpd.GeoDataFrame:
    """
    Sample validation squares around every target area footprint.

    Areas are processed in id order. With config.reseed_per_area each area
    draws from its own generator seeded by (validation_seed, crc32 of the
    area id), so its sample does not depend on which other areas exist;
    otherwise a single generator seeded once is shared by the whole loop.
    Areas with fewer candidates than config.n_validation keep all of them
    and are flagged with shortfall=True.

    Args:
        footprints: Target area footprints with an id column
        study_area: Study boundary in the same CRS
        config: Lattice geometry, sample size and seed
        id_column: Column holding the target area id

    Returns:
        GeoDataFrame with columns area_id, point_id, shortfall, geometry
    """
    if id_column not in footprints.columns:
        raise ValueError(f"Footprints have no '{id_column}' column")

    footprints = footprints.sort_values(id_column, kind="mergesort")
    shapely.prepare(study_area)

    shared_rng = np.random.default_rng(config.validation_seed)
    frames = []
    n_short = 0

    for area_id, footprint in zip(footprints[id_column], footprints.geometry):
        squares = candidate_squares(footprint, study_area, config)

        if config.reseed_per_area:
            rng = np.random.default_rng([config.validation_seed, zlib.crc32(str(area_id).encode())])
        else:
            rng = shared_rng
        shortfall = len(squares) < config.n_validation
        if shortfall:
            n_short += 1
            logger.warning(
                f"Area {area_id}: only {len(squares)} validation candidates "
                f"(requested {config.n_validation})"
            )
            chosen = squares
        else:
            idx = np.sort(rng.choice(len(squares), size=config.n_validation, replace=False))
            chosen = squares[idx]

        frames.append(pd.DataFrame({
            "area_id": area_id,
            "point_id": np.arange(len(chosen)),
            "shortfall": shortfall,
            "geometry": chosen,
        }))

    if not frames:
        return gpd.GeoDataFrame(columns=VALIDATION_COLUMNS, geometry="geometry", crs=footprints.crs)

    sites = gpd.GeoDataFrame(pd.concat(frames, ignore_index=True), geometry="geometry", crs=footprints.crs)
    logger.info(
        f"Generated {len(sites)} validation sites for {len(footprints)} areas "
        f"({n_short} areas short)"
    )
    return sites


def attach_density(
    sites: gpd.GeoDataFrame,
    tile_index: gpd.GeoDataFrame,
    config: SelectionConfig,
) -> gpd.GeoDataFrame:
    """
    Add the mean tree cover density of each validation site.

    Each site is matched to the tile whose bounds contain it. Sites with no
    matching tile, no valid pixels, or a mean above config.max_density are
    dropped, and shortfall is recomputed from the sites each area keeps.

    Returns:
        Copy of sites with a density column, in the input order
    """
    if sites.empty:
        return sites.assign(tile_id=pd.Series(dtype=object), density=pd.Series(dtype=float),
                            shortfall=pd.Series(dtype=bool))
    if tile_index.crs != sites.crs:
        tile_index = tile_index.to_crs(sites.crs)

    joined = gpd.sjoin(sites, tile_index[["tile_id", "density_path", "geometry"]],
                       how="left", predicate="within")
    joined = joined[~joined.index.duplicated(keep="first")].drop(columns="index_right")

    unmatched = joined["tile_id"].isna()
    if unmatched.any():
        logger.warning(f"{int(unmatched.sum())} validation sites are not inside any tile")

    density = pd.Series(np.nan, index=joined.index, dtype=float)
    n_failed = 0
    crs = sites.crs.to_string() if sites.crs is not None else None

    for density_path, group in joined[~unmatched].groupby("density_path", sort=True):
        try:
            with rasterio.open(density_path) as src:
                for idx, geom in zip(group.index, group.geometry):
                    density[idx] = _mean_value(src, geom, crs)
        except RasterioIOError as e:
            n_failed += len(group)
            logger.warning(f"Could not read {density_path}: {e}")

    joined["density"] = density
    invalid = density.isna() | (density > config.max_density)
    if n_failed:
        logger.warning(f"{n_failed} validation sites lost to raster read failures")
    logger.info(f"Density attached to {int((~invalid).sum())}/{len(joined)} validation sites")

    kept = joined[~invalid].drop(columns="density_path")
    # Dropped sites can leave an area short even if sampling was not
    counts = kept.groupby("area_id")["area_id"].transform("size")
    kept["shortfall"] = (counts < config.n_validation).astype(bool)

    lost = sorted(set(sites["area_id"]) - set(kept["area_id"]), key=str)
    if lost:
        logger.warning(f"{len(lost)} areas have no validation sites left: {lost}")
    n_short = kept.loc[kept["shortfall"], "area_id"].nunique()
    if n_short:
        logger.warning(f"{n_short} areas have fewer than {config.n_validation} validation sites")
    return kept


def _mean_value(src: rasterio.io.DatasetReader, geom: BaseGeometry, crs: Optional[str]) -> float:
    try:
        values = crop_values(src, geom, crs)
    except ValueError:
        return np.nan
    if values.size == 0:
        return np.nan
    return float(values.mean())
