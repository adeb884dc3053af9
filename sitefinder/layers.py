"""
Input layers: study area, tile manifest, land cover class table and raster cropping.

Rasters are never read in full. Every statistic is computed from a masked,
windowed read of the polygon being evaluated.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
from rasterio.crs import CRS
from rasterio.mask import mask as rio_mask
from rasterio.warp import transform_bounds, transform_geom
from shapely.geometry import box, mapping
from shapely.geometry.base import BaseGeometry

from .config import PIPELINE_CRS

logger = logging.getLogger(__name__)


MANIFEST_COLUMNS = ("tile_id", "density_path", "type_path")

# CORINE Land Cover raster codes (1-44) grouped into coarse labels
CLC_LABELS = {
    "Artificial surfaces": range(1, 12),
    "Agricultural areas": range(12, 23),
    "Forests": range(23, 26),
    "Scrub and herbaceous vegetation": range(26, 30),
    "Open spaces with little or no vegetation": range(30, 35),
    "Wetlands": range(35, 40),
    "Water bodies": range(40, 45),
}


@dataclass(frozen=True)
class Tile:
    """A unit of the raster tiling scheme with its per-tile layers."""

    tile_id: str
    density_path: Path
    type_path: Path
    grid_path: Optional[Path] = None

    def bounds_in(self, crs: str = PIPELINE_CRS) -> tuple[float, float, float, float]:
        """Extent of the tile in crs, read from the tree cover density raster."""
        with rasterio.open(self.density_path) as src:
            if src.crs is not None and CRS.from_user_input(crs) != src.crs:
                return tuple(transform_bounds(src.crs, crs, *src.bounds))
            return tuple(src.bounds)


@dataclass(frozen=True)
class LayerPaths:
    """Raster paths handed to extraction workers. Each worker opens its own handles."""

    density: Path
    tree_type: Path
    land_cover: Path


def load_study_area(path: str | Path, crs: str = PIPELINE_CRS) -> BaseGeometry:
    """
    Load the study boundary as a single geometry in the pipeline CRS.

    Args:
        path: Any vector file readable by GeoPandas
        crs: Target reference system

    Returns:
        Dissolved (multi)polygon
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Study area not found: {path}")

    gdf = gpd.read_file(path)
    if gdf.empty:
        raise ValueError(f"Study area file contains no features: {path}")
    if gdf.crs is None:
        raise ValueError(f"Study area has no reference system: {path}")

    geom = gdf.to_crs(crs).geometry.union_all()
    logger.info(f"Loaded study area: {geom.area / 1e6:,.0f} km²")
    return geom


def load_manifest(path: str | Path) -> list[Tile]:
    """
    Read the tile manifest.

    The manifest is a CSV with columns tile_id, density_path, type_path and
    optionally grid_path. Relative paths are resolved against the manifest's
    directory.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tile manifest not found: {path}")

    df = pd.read_csv(path, dtype={"tile_id": str})
    missing = [c for c in MANIFEST_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Tile manifest is missing columns: {missing}")
    if df["tile_id"].duplicated().any():
        dupes = df.loc[df["tile_id"].duplicated(), "tile_id"].tolist()
        raise ValueError(f"Duplicate tile ids in manifest: {dupes}")

    base = path.parent

    def resolve(value) -> Optional[Path]:
        if pd.isna(value) or value == "":
            return None
        p = Path(value)
        return p if p.is_absolute() else base / p

    tiles = [
        Tile(
            tile_id=row.tile_id,
            density_path=resolve(row.density_path),
            type_path=resolve(row.type_path),
            grid_path=resolve(getattr(row, "grid_path", None)),
        )
        for row in df.itertuples(index=False)
    ]
    logger.info(f"Loaded {len(tiles)} tiles from {path}")
    return tiles


def default_class_table() -> dict[int, str]:
    """Built-in CORINE Land Cover code -> coarse label table."""
    return {code: label for label, codes in CLC_LABELS.items() for code in codes}


def load_class_table(path: Optional[str | Path] = None, forest_label: str = "Forests") -> dict[int, str]:
    """
    Load the land cover class table (raw code -> coarse label).

    Args:
        path: CSV with columns code, label. The built-in table is used if None.
        forest_label: Label that must be present in the table

    Returns:
        Mapping of raster code to label
    """
    if path is None:
        table = default_class_table()
    else:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Class table not found: {path}")
        df = pd.read_csv(path)
        if not {"code", "label"} <= set(df.columns):
            raise ValueError(f"Class table needs 'code' and 'label' columns: {path}")
        df = df.dropna(subset=["code", "label"])
        table = dict(zip(df["code"].astype(int), df["label"].astype(str)))

    if forest_label not in table.values():
        raise ValueError(f"Class table has no '{forest_label}' label")
    return table


def build_tile_index(tiles: list[Tile], crs: str = PIPELINE_CRS) -> gpd.GeoDataFrame:
    """Bounding boxes of every tile's density raster, for containment lookups."""
    records = []
    for tile in tiles:
        with rasterio.open(tile.density_path) as src:
            bounds = src.bounds
            src_crs = src.crs
        if src_crs is not None and CRS.from_user_input(crs) != src_crs:
            geom = gpd.GeoSeries([box(*bounds)], crs=src_crs).to_crs(crs).iloc[0]
        else:
            geom = box(*bounds)
        records.append({"tile_id": tile.tile_id, "density_path": str(tile.density_path), "geometry": geom})

    return gpd.GeoDataFrame(records, columns=["tile_id", "density_path", "geometry"], crs=crs)


def load_tile_index(path: str | Path, crs: str = PIPELINE_CRS) -> gpd.GeoDataFrame:
    """Read a tile-bounds index from a vector file with tile_id and density_path columns."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tile index not found: {path}")
    gdf = gpd.read_file(path)
    missing = {"tile_id", "density_path"} - set(gdf.columns)
    if missing:
        raise ValueError(f"Tile index is missing columns: {sorted(missing)}")
    gdf["tile_id"] = gdf["tile_id"].astype(str)
    return gdf.to_crs(crs)


def crop_values(
    src: rasterio.io.DatasetReader,
    geometry: BaseGeometry,
    geometry_crs: Optional[str] = None,
) -> np.ndarray:
    """
    Return the valid pixel values of band 1 inside a polygon.

    Only the polygon's window is read. Pixels outside the polygon or equal to
    the raster's nodata value are excluded.

    Raises:
        ValueError: If the polygon does not overlap the raster
    """
    geom = mapping(geometry)
    if geometry_crs is not None and src.crs is not None and CRS.from_user_input(geometry_crs) != src.crs:
        geom = transform_geom(geometry_crs, src.crs, geom)

    data, _ = rio_mask(src, [geom], crop=True, filled=False, indexes=1)
    return np.ma.compressed(data)
