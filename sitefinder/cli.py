"""
Command-line interface for the site selection pipeline.
"""

import argparse
import dataclasses
import logging
from pathlib import Path

from .config import SelectionConfig
from .pipeline import build_validation_sites, select_sites


def build_config(args: argparse.Namespace) -> SelectionConfig:
    """Apply command-line overrides to the default configuration."""
    overrides = {}
    for name in ("n_jobs", "n_tiles", "cell_size", "area_size", "crs", "batch_size",
                 "n_validation", "target_resolution", "exclusion_radius", "outer_radius"):
        value = getattr(args, name, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, "seed", None) is not None:
        overrides["validation_seed"] = args.seed
    if getattr(args, "shared_seed", False):
        overrides["reseed_per_area"] = False
    if getattr(args, "overwrite", False):
        overrides["overwrite"] = True
    return dataclasses.replace(SelectionConfig(), **overrides)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Select survey sites and validation sites")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--n-jobs", "-j", type=int, help="Worker processes (default: cores - 1)")
    parser.add_argument("--crs", help="Equal-area reference system (default: EPSG:3035)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    select = subparsers.add_parser("select", help="Select final survey sites")
    select.add_argument("study_area", type=Path, help="Study boundary vector file")
    select.add_argument("manifest", type=Path, help="Tile manifest CSV")
    select.add_argument("land_cover", type=Path, help="Land cover raster")
    select.add_argument("--output-dir", "-o", type=Path, default=Path("./output"), help="Output directory")
    select.add_argument("--class-table", type=Path, help="Land cover class table CSV (code,label)")
    select.add_argument("--areas", type=Path, help="Selection areas vector file with area_id")
    select.add_argument("--n-tiles", type=int, help="Number of tiles to select (default: 150)")
    select.add_argument("--cell-size", type=float, help="Candidate cell side in metres (default: 400)")
    select.add_argument("--area-size", type=float, help="Selection lattice cell side in metres")
    select.add_argument("--batch-size", type=int, help="Candidates per worker task")
    select.add_argument("--overwrite", action="store_true", help="Reprocess tiles that already have output")

    validate = subparsers.add_parser("validate", help="Generate validation sites")
    validate.add_argument("footprints", type=Path, help="Target area footprints vector file")
    validate.add_argument("study_area", type=Path, help="Study boundary vector file")
    source = validate.add_mutually_exclusive_group(required=True)
    source.add_argument("--manifest", type=Path, help="Tile manifest CSV")
    source.add_argument("--tile-index", type=Path, help="Tile bounds vector file")
    validate.add_argument("--output-dir", "-o", type=Path, default=Path("./output"), help="Output directory")
    validate.add_argument("--id-column", default="area_id", help="Footprint id column")
    validate.add_argument("--n-validation", type=int, help="Sites per area (default: 20)")
    validate.add_argument("--target-resolution", type=float, help="Lattice spacing and site size in metres")
    validate.add_argument("--exclusion-radius", type=float, help="Buffer around footprints in metres")
    validate.add_argument("--outer-radius", type=float, help="Lattice extent in metres")
    validate.add_argument("--seed", "-s", type=int, help="Random seed (default: 42)")
    validate.add_argument("--shared-seed", action="store_true",
                          help="Seed once and share the random state across all areas")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    config = build_config(args)

    if args.command == "select":
        result = select_sites(
            study_area_path=args.study_area,
            manifest_path=args.manifest,
            land_cover_path=args.land_cover,
            output_dir=args.output_dir,
            class_table_path=args.class_table,
            areas_path=args.areas,
            config=config,
        )
        return 1 if result.shortfall else 0

    sites = build_validation_sites(
        footprints_path=args.footprints,
        study_area_path=args.study_area,
        output_dir=args.output_dir,
        manifest_path=args.manifest,
        tile_index_path=args.tile_index,
        id_column=args.id_column,
        config=config,
    )
    return 1 if sites.empty or sites["shortfall"].any() else 0


if __name__ == "__main__":
    raise SystemExit(main())
