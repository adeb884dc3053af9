"""
Main pipeline for selecting survey sites and validation sites.
"""

import json
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import geopandas as gpd
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from shapely.geometry.base import BaseGeometry
from tqdm import tqdm

from .config import SelectionConfig
from .grid import load_or_generate_grid, write_grid
from .layers import (
    LayerPaths,
    Tile,
    build_tile_index,
    load_class_table,
    load_manifest,
    load_study_area,
    load_tile_index,
)
from .metrics import MetricRecord, MetricResult, Rejection, extract_batch
from .scoring import score_frame
from .selection import TileSelection, assign_areas, build_area_lattice, sample_sites, select_tiles
from .validation import attach_density, generate_validation_sites

logger = logging.getLogger(__name__)


SCORED_PREFIX = "scored_"
EMPTY_SUFFIX = ".empty"


@dataclass
class TileReport:
    """Outcome of processing one tile."""

    tile_id: str
    n_cells: int = 0
    n_retained: int = 0
    rejections: dict[str, int] = field(default_factory=dict)
    skipped: bool = False

    @property
    def n_read_failures(self) -> int:
        return self.rejections.get("read_failure", 0)


@dataclass
class SelectionResult:
    """Container for selection results."""

    candidates: gpd.GeoDataFrame
    selection: TileSelection
    sites: gpd.GeoDataFrame
    reports: list[TileReport]

    @property
    def shortfall(self) -> int:
        return self.selection.shortfall

    def summary(self) -> dict:
        rejections = Counter()
        for report in self.reports:
            rejections.update(report.rejections)
        return {
            "n_tiles_processed": sum(not r.skipped for r in self.reports),
            "n_tiles_resumed": sum(r.skipped for r in self.reports),
            "n_cells": sum(r.n_cells for r in self.reports),
            "n_retained": len(self.candidates),
            "rejections": dict(sorted(rejections.items())),
            "n_selected_tiles": len(self.selection),
            "requested_tiles": self.selection.requested,
            "shortfall": self.shortfall,
            "n_sites": len(self.sites),
            "tiles": [asdict(r) for r in self.reports],
        }

    def save(self, output_dir: Path) -> dict[str, Path]:
        """Save results to files."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        paths = {}

        tiles_path = output_dir / "selected_tiles.csv"
        self.selection.tiles.to_csv(tiles_path, index=False)
        paths["tiles"] = tiles_path
        logger.info(f"Saved {len(self.selection)} selected tiles: {tiles_path}")

        if not self.sites.empty:
            sites_path = output_dir / "final_sites.gpkg"
            self.sites.to_file(sites_path, driver="GPKG")
            paths["sites"] = sites_path
            logger.info(f"Saved {len(self.sites)} final sites: {sites_path}")

        summary_path = output_dir / "summary.json"
        with open(summary_path, "w") as f:
            json.dump(self.summary(), f, indent=2)
        paths["summary"] = summary_path

        return paths


def scored_path(output_dir: Path, tile_id: str) -> Path:
    return Path(output_dir) / f"{SCORED_PREFIX}{tile_id}.gpkg"


def is_tile_done(output_dir: Path, tile_id: str) -> bool:
    """A tile is done when its scored file or its empty marker exists."""
    path = scored_path(output_dir, tile_id)
    return path.exists() or path.with_suffix(EMPTY_SUFFIX).exists()


def _split(candidates: gpd.GeoDataFrame, n_batches: int, batch_size: Optional[int]) -> list[gpd.GeoDataFrame]:
    if batch_size:
        n_batches = max(1, int(np.ceil(len(candidates) / batch_size)))
    n_batches = max(1, min(n_batches, len(candidates)))
    return [candidates.iloc[idx] for idx in np.array_split(np.arange(len(candidates)), n_batches)]


def merge_results(
    candidates: gpd.GeoDataFrame,
    results: dict[int, MetricResult],
) -> tuple[gpd.GeoDataFrame, Counter]:
    """
    Join metric results back onto their candidates by cell_id.

    Rejected candidates are dropped and tallied by reason. The retained
    candidates are returned sorted by cell_id whatever order the results
    arrived in.
    """
    rejections = Counter()
    records = {}
    for cell_id, result in results.items():
        if isinstance(result, Rejection):
            rejections[result.reason.value] += 1
        elif isinstance(result, MetricRecord):
            records[cell_id] = result.to_dict()

    metrics = pd.DataFrame.from_dict(records, orient="index")
    retained = candidates[candidates["cell_id"].isin(list(records))]
    retained = retained.sort_values("cell_id", kind="mergesort").reset_index(drop=True)
    if metrics.empty:
        return retained, rejections

    retained = retained.join(metrics, on="cell_id")
    return retained, rejections


def process_tile(
    tile: Tile,
    study_area: BaseGeometry,
    land_cover_path: Path,
    class_table: dict[int, str],
    config: SelectionConfig,
    output_dir: Path,
    parallel: Parallel,
) -> TileReport:
    """
    Grid, extract, score and write one tile.

    The tile's output is written atomically, so a crash only loses the tile
    in flight and a re-run picks up at the first tile without an artifact.
    """
    report = TileReport(tile_id=tile.tile_id)

    if not config.overwrite and is_tile_done(output_dir, tile.tile_id):
        report.skipped = True
        return report

    grid = load_or_generate_grid(tile, study_area, cell_size=config.cell_size, crs=config.crs)
    report.n_cells = len(grid)
    marker = scored_path(output_dir, tile.tile_id).with_suffix(EMPTY_SUFFIX)

    if grid.empty:
        logger.info(f"Tile {tile.tile_id}: no cells inside study area")
        marker.touch()
        return report

    layers = LayerPaths(density=tile.density_path, tree_type=tile.type_path, land_cover=land_cover_path)
    batches = _split(grid, config.n_jobs, config.batch_size)
    batch_results = parallel(
        delayed(extract_batch)(batch, layers, class_table, config) for batch in batches
    )

    results: dict[int, MetricResult] = {}
    for batch_result in batch_results:
        results.update(batch_result)

    retained, rejections = merge_results(grid, results)
    report.n_retained = len(retained)
    report.rejections = dict(sorted(rejections.items()))

    if report.n_read_failures:
        logger.warning(f"Tile {tile.tile_id}: {report.n_read_failures} raster read failures")

    if retained.empty:
        logger.info(f"Tile {tile.tile_id}: no candidates retained of {len(grid)}")
        marker.touch()
        return report

    write_grid(score_frame(retained), scored_path(output_dir, tile.tile_id))
    logger.debug(f"Tile {tile.tile_id}: retained {len(retained)}/{len(grid)}")
    return report


def load_scored(output_dir: Path, tile_ids: list[str], crs: str) -> gpd.GeoDataFrame:
    """Read every tile's scored candidates and sort them by (tile_id, cell_id)."""
    frames = []
    for tile_id in tile_ids:
        path = scored_path(output_dir, tile_id)
        if path.exists():
            gdf = gpd.read_file(path)
            gdf["tile_id"] = gdf["tile_id"].astype(str)
            frames.append(gdf)

    if not frames:
        return gpd.GeoDataFrame(columns=["tile_id", "cell_id", "geometry"], geometry="geometry", crs=crs)

    candidates = gpd.GeoDataFrame(pd.concat(frames, ignore_index=True), geometry="geometry", crs=frames[0].crs)
    candidates = candidates.to_crs(crs)
    return candidates.sort_values(["tile_id", "cell_id"], kind="mergesort").reset_index(drop=True)


def select_sites(
    study_area_path: Path,
    manifest_path: Path,
    land_cover_path: Path,
    output_dir: Path,
    class_table_path: Optional[Path] = None,
    areas_path: Optional[Path] = None,
    config: Optional[SelectionConfig] = None,
) -> SelectionResult:
    """
    Run the full selection: grid, metrics, scores, tile ranking and final sites.

    Args:
        study_area_path: Study boundary vector file
        manifest_path: Tile manifest CSV
        land_cover_path: Land cover raster covering the whole study area
        output_dir: Directory for per-tile files and final outputs
        class_table_path: Land cover class table CSV (built-in table if None)
        areas_path: Vector file of selection areas with an area_id column;
            a coarse lattice over the study area is used if None
        config: Pipeline configuration

    Returns:
        SelectionResult with retained candidates, selected tiles and final sites
    """
    config = config or SelectionConfig()
    output_dir = Path(output_dir)
    tiles_dir = output_dir / "tiles"
    tiles_dir.mkdir(parents=True, exist_ok=True)

    logger.info("=" * 60)
    logger.info("Selecting survey sites")
    logger.info("=" * 60)

    # 1. Inputs
    logger.info("[1/4] Loading inputs...")
    study_area = load_study_area(study_area_path, crs=config.crs)
    tiles = load_manifest(manifest_path)
    class_table = load_class_table(class_table_path, forest_label=config.forest_label)
    land_cover_path = Path(land_cover_path)
    if not land_cover_path.exists():
        raise FileNotFoundError(f"Land cover raster not found: {land_cover_path}")

    # 2. Per-tile grid, metrics and scores
    logger.info(f"[2/4] Processing {len(tiles)} tiles with {config.n_jobs} workers...")
    reports = []
    with Parallel(n_jobs=config.n_jobs) as parallel:
        for tile in tqdm(tiles, desc="Tiles"):
            reports.append(
                process_tile(tile, study_area, land_cover_path, class_table, config, tiles_dir, parallel)
            )

    n_resumed = sum(r.skipped for r in reports)
    if n_resumed:
        logger.info(f"  Resumed: {n_resumed} tiles already had output")
    n_failures = sum(r.n_read_failures for r in reports)
    if n_failures:
        logger.warning(f"  {n_failures} candidates lost to raster read failures")

    # 3. Rank tiles
    logger.info("[3/4] Ranking tiles...")
    candidates = load_scored(tiles_dir, [t.tile_id for t in tiles], config.crs)
    logger.info(f"  Retained candidates: {len(candidates):,}")

    if areas_path is not None:
        areas = gpd.read_file(areas_path)
        if "area_id" not in areas.columns:
            raise ValueError(f"Areas file has no 'area_id' column: {areas_path}")
        areas["area_id"] = areas["area_id"].astype(str)
    else:
        areas = build_area_lattice(study_area, config.area_size, crs=config.crs)

    candidates = assign_areas(candidates, areas)
    selection = select_tiles(candidates, n_tiles=config.n_tiles)

    # 4. Final sites
    logger.info("[4/4] Sampling final sites...")
    sites = sample_sites(candidates, selection)

    result = SelectionResult(candidates=candidates, selection=selection, sites=sites, reports=reports)
    result.save(output_dir)

    logger.info("=" * 60)
    if result.shortfall:
        logger.warning(f"COMPLETE with shortfall: {len(sites)} sites, {result.shortfall} short")
    else:
        logger.info(f"COMPLETE: {len(sites)} sites")
    logger.info("=" * 60)

    return result


def build_validation_sites(
    footprints_path: Path,
    study_area_path: Path,
    output_dir: Path,
    manifest_path: Optional[Path] = None,
    tile_index_path: Optional[Path] = None,
    id_column: str = "area_id",
    config: Optional[SelectionConfig] = None,
) -> gpd.GeoDataFrame:
    """
    Generate validation sites around target area footprints and attach density.

    The tile-bounds index comes from tile_index_path if given, otherwise it
    is built from the manifest's density rasters.

    Returns:
        Validation sites with a density column
    """
    config = config or SelectionConfig()
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    if tile_index_path is None and manifest_path is None:
        raise ValueError("Either manifest_path or tile_index_path is required")

    logger.info("=" * 60)
    logger.info("Generating validation sites")
    logger.info("=" * 60)

    logger.info("[1/3] Loading inputs...")
    study_area = load_study_area(study_area_path, crs=config.crs)
    footprints_path = Path(footprints_path)
    if not footprints_path.exists():
        raise FileNotFoundError(f"Footprints not found: {footprints_path}")
    footprints = gpd.read_file(footprints_path).to_crs(config.crs)
    if tile_index_path is not None:
        tile_index = load_tile_index(tile_index_path, crs=config.crs)
    else:
        tile_index = build_tile_index(load_manifest(manifest_path), crs=config.crs)

    logger.info(f"[2/3] Sampling {config.n_validation} sites per area for {len(footprints)} areas...")
    sites = generate_validation_sites(footprints, study_area, config, id_column=id_column)

    logger.info("[3/3] Extracting density...")
    sites = attach_density(sites, tile_index, config)

    if not sites.empty:
        path = output_dir / "validation_sites.gpkg"
        sites.to_file(path, driver="GPKG")
        logger.info(f"Saved {len(sites)} validation sites: {path}")
    else:
        logger.warning("No validation sites to save")

    return sites
