"""
Tests for input loading and raster cropping.
"""

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
import rasterio
from shapely.geometry import box

from sitefinder.layers import (
    Tile,
    build_tile_index,
    crop_values,
    default_class_table,
    load_class_table,
    load_manifest,
    load_study_area,
)

from conftest import CRS, X0, Y0, density_array, write_raster


class TestManifest:

    def test_relative_paths_resolved(self, tmp_path):
        path = tmp_path / "manifest.csv"
        pd.DataFrame([
            {"tile_id": "001", "density_path": "tcd/a.tif", "type_path": "/abs/b.tif"},
        ]).to_csv(path, index=False)

        tiles = load_manifest(path)

        assert tiles[0].tile_id == "001"
        assert tiles[0].density_path == tmp_path / "tcd" / "a.tif"
        assert str(tiles[0].type_path) == "/abs/b.tif"
        assert tiles[0].grid_path is None

    def test_missing_columns(self, tmp_path):
        path = tmp_path / "manifest.csv"
        pd.DataFrame([{"tile_id": "a", "density_path": "x.tif"}]).to_csv(path, index=False)
        with pytest.raises(ValueError, match="type_path"):
            load_manifest(path)

    def test_duplicate_ids(self, tmp_path):
        path = tmp_path / "manifest.csv"
        pd.DataFrame([{"tile_id": "a", "density_path": "x", "type_path": "y"}] * 2).to_csv(path, index=False)
        with pytest.raises(ValueError, match="Duplicate"):
            load_manifest(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_manifest(tmp_path / "missing.csv")


class TestClassTable:

    def test_default_table(self):
        table = default_class_table()
        assert table[23] == table[24] == table[25] == "Forests"
        assert table[12] == "Agricultural areas"
        assert len(set(table.values())) == 7

    def test_from_csv(self, tmp_path):
        path = tmp_path / "classes.csv"
        pd.DataFrame({"code": [1, 2, 3], "label": ["Forests", "Other", None]}).to_csv(path, index=False)
        assert load_class_table(path) == {1: "Forests", 2: "Other"}

    def test_forest_label_required(self, tmp_path):
        path = tmp_path / "classes.csv"
        pd.DataFrame({"code": [1], "label": ["Urban"]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="Forests"):
            load_class_table(path)


class TestStudyArea:

    def test_features_dissolved_and_reprojected(self, write_vector):
        gdf = gpd.GeoDataFrame(
            geometry=[box(X0, Y0, X0 + 1000, Y0 + 1000), box(X0 + 1000, Y0, X0 + 2000, Y0 + 1000)],
            crs=CRS,
        ).to_crs("EPSG:4326")
        geom = load_study_area(write_vector("study", gdf))

        assert geom.area == pytest.approx(2_000_000, rel=1e-3)
        assert geom.bounds[0] == pytest.approx(X0, abs=1)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_study_area(tmp_path / "nope.gpkg")


class TestRasters:

    def test_tile_index_from_bounds(self, tmp_path):
        tcd = write_raster(tmp_path / "tcd.tif", density_array(800, 400), X0, Y0 + 400, 10)
        index = build_tile_index([Tile("t1", tcd, tcd)], crs=CRS)

        assert index["tile_id"].tolist() == ["t1"]
        assert index.geometry.iloc[0].bounds == pytest.approx((X0, Y0, X0 + 800, Y0 + 400))

    def test_crop_reads_only_polygon(self, tmp_path):
        data = density_array(800, 800, value=20)
        data[:40, :40] = 70
        tcd = write_raster(tmp_path / "tcd.tif", data, X0, Y0 + 800, 10, nodata=255)
        with rasterio.open(tcd) as src:
            values = crop_values(src, box(X0, Y0 + 400, X0 + 400, Y0 + 800))

        assert values.size == 1600
        assert np.all(values == 70)

    def test_crop_reprojects_geometry(self, tmp_path):
        tcd = write_raster(tmp_path / "tcd.tif", density_array(800, 800, value=20), X0, Y0 + 800, 10)
        cell = gpd.GeoSeries([box(X0 + 200, Y0 + 200, X0 + 600, Y0 + 600)], crs=CRS).to_crs("EPSG:4326")
        with rasterio.open(tcd) as src:
            values = crop_values(src, cell.iloc[0], geometry_crs="EPSG:4326")

        assert values.size == pytest.approx(1600, rel=0.05)
        assert np.all(values == 20)

    def test_crop_outside_raises(self, tmp_path):
        tcd = write_raster(tmp_path / "tcd.tif", density_array(400, 400), X0, Y0 + 400, 10)
        with rasterio.open(tcd) as src:
            with pytest.raises(ValueError):
                crop_values(src, box(X0 + 10_000, Y0, X0 + 10_400, Y0 + 400))
