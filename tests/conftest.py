"""
Shared fixtures: small synthetic rasters and vector files in EPSG:3035.
"""

from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin
from shapely.geometry import box

from sitefinder.config import SelectionConfig

CRS = "EPSG:3035"
X0 = 4_000_000.0
Y0 = 3_000_000.0

# One 400 m candidate cell of land cover (100 m pixels):
# 8 forest, 6 agricultural, 2 water -> 3 classes, 50 % forest
CLC_BLOCK = np.array([
    [23, 23, 23, 23],
    [23, 23, 23, 23],
    [12, 12, 12, 12],
    [12, 12, 41, 41],
], dtype=np.uint8)


def write_raster(path: Path, data: np.ndarray, x0: float, y1: float, res: float, nodata=None, crs=CRS) -> Path:
    """Write a single-band GeoTIFF with its top-left corner at (x0, y1)."""
    with rasterio.open(
        path, "w",
        driver="GTiff",
        height=data.shape[0],
        width=data.shape[1],
        count=1,
        dtype=data.dtype,
        crs=crs,
        transform=from_origin(x0, y1, res, res),
        nodata=nodata,
    ) as dst:
        dst.write(data, 1)
    return path


def density_array(width_m: float, height_m: float, value: int = 50) -> np.ndarray:
    return np.full((int(height_m / 10), int(width_m / 10)), value, dtype=np.uint8)


def tree_type_array(width_m: float, height_m: float) -> np.ndarray:
    """Every fourth 10 m column coniferous, the rest broadleaved (b=0.75, c=0.25)."""
    cols = np.arange(int(width_m / 10))
    row = np.where(cols % 4 == 3, 2, 1).astype(np.uint8)
    return np.tile(row, (int(height_m / 10), 1))


def land_cover_array(width_m: float, height_m: float) -> np.ndarray:
    return np.tile(CLC_BLOCK, (int(height_m / 400), int(width_m / 400)))


@pytest.fixture
def config():
    return SelectionConfig(n_jobs=1)


@pytest.fixture
def cell():
    """A 400 m candidate cell at the top-left of the synthetic rasters."""
    return box(X0, Y0 + 400, X0 + 400, Y0 + 800)


@pytest.fixture
def rasters(tmp_path):
    """Density, tree type and land cover rasters covering 800 m x 800 m."""
    y1 = Y0 + 800
    return {
        "density": write_raster(tmp_path / "tcd.tif", density_array(800, 800), X0, y1, 10, nodata=255),
        "tree_type": write_raster(tmp_path / "dlt.tif", tree_type_array(800, 800), X0, y1, 10, nodata=255),
        "land_cover": write_raster(tmp_path / "clc.tif", land_cover_array(800, 800), X0, y1, 100, nodata=0),
    }


@pytest.fixture
def write_vector(tmp_path):
    def _write(name: str, gdf: gpd.GeoDataFrame) -> Path:
        path = tmp_path / f"{name}.gpkg"
        gdf.to_file(path, driver="GPKG")
        return path
    return _write
