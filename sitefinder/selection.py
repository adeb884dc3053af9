"""
Tile ranking and final site sampling.
"""

import logging
from dataclasses import dataclass

import geopandas as gpd
import numpy as np
import pandas as pd
import shapely
from shapely.geometry.base import BaseGeometry

from .config import N_TILES, PIPELINE_CRS

logger = logging.getLogger(__name__)


def build_area_lattice(
    study_area: BaseGeometry,
    size: float,
    crs: str = PIPELINE_CRS,
) -> gpd.GeoDataFrame:
    """
    Coarse square lattice over the study area used to group candidates.

    Cells are aligned to multiples of size and kept if they intersect the
    study area. Ids are "E{x}N{y}" of the lower-left corner in kilometres,
    which sort the same way on every run.
    """
    minx, miny, maxx, maxy = study_area.bounds
    xs = np.arange(np.floor(minx / size) * size, maxx, size)
    ys = np.arange(np.floor(miny / size) * size, maxy, size)
    gx, gy = np.meshgrid(xs, ys)
    gx = gx.ravel()
    gy = gy.ravel()

    cells = shapely.box(gx, gy, gx + size, gy + size)
    shapely.prepare(study_area)
    keep = shapely.intersects(cells, study_area)

    ids = [f"E{x / 1000:g}N{y / 1000:g}" for x, y in zip(gx[keep], gy[keep])]
    return gpd.GeoDataFrame({"area_id": ids}, geometry=cells[keep], crs=crs)


def assign_areas(candidates: gpd.GeoDataFrame, areas: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """
    Tag each candidate with the id of the area that contains it.

    Candidates that fall in no single area are dropped.
    """
    if candidates.crs != areas.crs:
        areas = areas.to_crs(candidates.crs)

    joined = gpd.sjoin(candidates, areas[["area_id", "geometry"]], how="inner", predicate="within")
    joined = joined.drop(columns="index_right")
    # Keep one match per candidate
    joined = joined[~joined.index.duplicated(keep="first")].sort_index()

    n_missing = len(candidates) - len(joined)
    if n_missing:
        logger.warning(f"{n_missing} candidates matched no area and were dropped")
    return joined.reset_index(drop=True)


@dataclass
class TileSelection:
    """Selected tiles ranked by candidate count."""

    tiles: pd.DataFrame  # columns: area_id, n_candidates, rank
    requested: int

    @property
    def shortfall(self) -> int:
        """How many tiles short of the requested count the selection is."""
        return max(0, self.requested - len(self.tiles))

    def __len__(self) -> int:
        return len(self.tiles)


def select_tiles(
    candidates: pd.DataFrame,
    n_tiles: int = N_TILES,
    area_column: str = "area_id",
) -> TileSelection:
    """
    Rank areas by number of retained candidates and keep the top n_tiles.

    Count ties are broken by area id so the result never depends on the
    order in which candidates were produced.

    Args:
        candidates: Retained candidates tagged with area_column
        n_tiles: Number of tiles to keep
        area_column: Column holding the area id

    Returns:
        TileSelection with rank 1..N
    """
    counts = (
        candidates.groupby(area_column, sort=False)
        .size()
        .rename("n_candidates")
        .reset_index()
        .rename(columns={area_column: "area_id"})
    )
    counts = counts.sort_values(
        ["n_candidates", "area_id"], ascending=[False, True], kind="mergesort"
    )
    top = counts.head(n_tiles).reset_index(drop=True)
    top["rank"] = np.arange(1, len(top) + 1)

    selection = TileSelection(tiles=top, requested=n_tiles)
    if selection.shortfall:
        logger.warning(
            f"Only {len(top)} tiles with retained candidates (requested {n_tiles}); "
            f"selection is {selection.shortfall} short"
        )
    else:
        logger.info(f"Selected {len(top)} of {len(counts)} tiles")
    return selection


def sample_sites(
    candidates: gpd.GeoDataFrame,
    selection: TileSelection,
    area_column: str = "area_id",
    score_column: str = "total_score",
) -> gpd.GeoDataFrame:
    """
    Draw one final site per selected tile from its maximum-score candidates.

    The draw for the tile at rank i is seeded with i, and candidates are
    ordered by (tile_id, cell_id) first, so identical inputs always give an
    identical set of sites.

    Returns:
        GeoDataFrame with one row per selected tile, in rank order
    """
    rows = []
    grouped = dict(tuple(candidates.groupby(area_column, sort=False)))

    for area_id, rank in zip(selection.tiles["area_id"], selection.tiles["rank"]):
        group = grouped[area_id]
        best = group[group[score_column] == group[score_column].max()]
        best = best.sort_values(["tile_id", "cell_id"], kind="mergesort")

        rng = np.random.default_rng(int(rank))
        pick = best.iloc[[int(rng.integers(len(best)))]].copy()
        pick["rank"] = int(rank)
        pick["n_max_score"] = len(best)
        rows.append(pick)

    if not rows:
        return gpd.GeoDataFrame(columns=list(candidates.columns) + ["rank", "n_max_score"],
                                geometry="geometry", crs=candidates.crs)

    sites = gpd.GeoDataFrame(pd.concat(rows, ignore_index=True), geometry="geometry", crs=candidates.crs)
    logger.info(f"Sampled {len(sites)} final sites")
    return sites
