"""
Candidate polygon lattice generation.
"""

import logging
import os
import re
from pathlib import Path
from typing import Optional

import geopandas as gpd
import numpy as np
import shapely
from shapely.geometry.base import BaseGeometry

from .config import CELL_SIZE, PIPELINE_CRS
from .layers import Tile

logger = logging.getLogger(__name__)


GRID_COLUMNS = ["tile_id", "cell_id", "area", "geometry"]


def generate_grid(
    tile_id: str,
    bounds: tuple[float, float, float, float],
    study_area: BaseGeometry,
    cell_size: float = CELL_SIZE,
    crs: str = PIPELINE_CRS,
) -> gpd.GeoDataFrame:
    """
    Tessellate a tile extent into square candidate cells inside the study area.

    Cells are aligned to a global lattice (multiples of cell_size) and only
    cells lying fully inside the tile extent are generated, so neighbouring
    tiles never share a cell. Cells that are not fully within the study area
    are dropped, not clipped.

    Args:
        tile_id: Identifier of the owning tile
        bounds: Tile extent as (minx, miny, maxx, maxy) in the pipeline CRS
        study_area: Study boundary in the pipeline CRS
        cell_size: Cell side length in metres (400 m = 16 ha)
        crs: Reference system of bounds and study_area

    Returns:
        GeoDataFrame with columns tile_id, cell_id, area, geometry ordered by
        cell_id (row-major from the top-left corner)
    """
    minx, miny, maxx, maxy = bounds

    x0 = np.ceil(minx / cell_size) * cell_size
    y1 = np.floor(maxy / cell_size) * cell_size
    n_cols = int(np.floor((maxx - x0) / cell_size + 1e-9))
    n_rows = int(np.floor((y1 - miny) / cell_size + 1e-9))

    if n_cols <= 0 or n_rows <= 0:
        return gpd.GeoDataFrame(columns=GRID_COLUMNS, geometry="geometry", crs=crs)

    cols, rows = np.meshgrid(np.arange(n_cols), np.arange(n_rows))
    cols = cols.ravel()
    rows = rows.ravel()

    xmin = x0 + cols * cell_size
    ymax = y1 - rows * cell_size
    cells = shapely.box(xmin, ymax - cell_size, xmin + cell_size, ymax)

    shapely.prepare(study_area)
    inside = shapely.within(cells, study_area)

    cell_ids = (rows * n_cols + cols)[inside]
    gdf = gpd.GeoDataFrame(
        {
            "tile_id": tile_id,
            "cell_id": cell_ids.astype(np.int64),
            "area": cell_size * cell_size,
        },
        geometry=cells[inside],
        crs=crs,
    )
    logger.debug(f"Tile {tile_id}: {len(gdf)}/{len(cells)} cells inside study area")
    return gdf.reset_index(drop=True)


def write_grid(gdf: gpd.GeoDataFrame, path: Path) -> Optional[Path]:
    """
    Write a per-tile GeoDataFrame atomically.

    The file is written under a temporary name and renamed into place, so a
    crash mid-write never leaves a partial artifact that would be mistaken
    for a finished tile.

    Returns:
        The written path, or None if the frame was empty (nothing is written)
    """
    if gdf.empty:
        return None

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.stem}_tmp{path.suffix}")
    if tmp_path.exists():
        tmp_path.unlink()

    # GeoPackage layer names may only hold word characters
    layer = re.sub(r"\W", "_", path.stem)
    gdf.to_file(tmp_path, layer=layer, driver="GPKG")
    os.replace(tmp_path, path)
    return path


def load_or_generate_grid(
    tile: Tile,
    study_area: BaseGeometry,
    cell_size: float = CELL_SIZE,
    crs: str = PIPELINE_CRS,
) -> gpd.GeoDataFrame:
    """Use the tile's pre-generated grid if the manifest names one, otherwise build it."""
    if tile.grid_path is not None and Path(tile.grid_path).exists():
        gdf = gpd.read_file(tile.grid_path).to_crs(crs)
        if "cell_id" not in gdf.columns:
            gdf["cell_id"] = np.arange(len(gdf))
        gdf["cell_id"] = gdf["cell_id"].astype(np.int64)
        gdf["tile_id"] = tile.tile_id
        gdf["area"] = gdf.geometry.area
        gdf = gdf[gdf.within(study_area)]
        return gdf[GRID_COLUMNS].sort_values("cell_id").reset_index(drop=True)

    return generate_grid(tile.tile_id, tile.bounds_in(crs), study_area, cell_size=cell_size, crs=crs)
