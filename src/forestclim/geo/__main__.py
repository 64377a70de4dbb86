#!/usr/bin/env python3
"""forestclim.geo

Geospatial CLI for forestclim: maps survey observations onto climate grids.

This is one of several forestclim subsystem CLIs:
- forestclim.geo       → pixel maps (this file)
- forestclim.extract   → per-pixel climate values from a raster source
- forestclim.summarize → long-format reshape and observation summaries

forestclim.geo consumes the cleaned IDS GeoPackage (one layer per observation
type) and writes one pixel map per layer under <output_dir>/pixel_maps/.

Design notes:
- Each source has its own grid, so pixel maps are built per source
- Lazy-imports geo modules to keep CLI startup fast
- Existing pixel maps are reused unless --overwrite

Examples:
  python -m forestclim.geo build-pixel-maps --source prism
  python -m forestclim.geo build-pixel-maps --source era5 --layers damage_areas
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from forestclim.config import (
    load_optional_yaml,
    load_layer_specs,
    resolve_source,
    format_bbox,
    DEFAULT_IDS_GPKG,
    DEFAULT_IDS_YAML,
    DEFAULT_SOURCES_YAML,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="forestclim.geo",
        description="Map survey observations onto climate source grids",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m forestclim.geo        # Pixel maps (this)
  python -m forestclim.extract    # Pixel value extraction
  python -m forestclim.summarize  # Reshape + observation summaries
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--sources-yaml",
        type=Path,
        default=DEFAULT_SOURCES_YAML,
        help=f"Path to sources YAML (default: {DEFAULT_SOURCES_YAML})",
    )
    ap.add_argument(
        "--ids-yaml",
        type=Path,
        default=DEFAULT_IDS_YAML,
        help=f"Path to observation layer YAML (default: {DEFAULT_IDS_YAML})",
    )
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Rebuild pixel maps that already exist")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- build-pixel-maps ---
    build = sub.add_parser(
        "build-pixel-maps",
        help="Build observation -> pixel maps for one climate source",
        description="""
Build pixel maps for every observation layer against one source grid.

This command:
1. Resolves the source grid (reference raster or configured bounds)
2. Drops observations outside the source coverage (e.g. CONUS-only sources)
3. Maps unique geometries to grid cells with coverage fractions
4. Writes <layer>_pixel_map.parquet per layer
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    build.add_argument("--source", required=True, help="Source id (terraclimate, prism, worldclim, era5)")
    build.add_argument(
        "--ids-gpkg",
        type=Path,
        default=DEFAULT_IDS_GPKG,
        help=f"Cleaned observation GeoPackage (default: {DEFAULT_IDS_GPKG})",
    )
    build.add_argument("--layers", nargs="+", default=None, help="Subset of layers to build (default: all)")

    return ap


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_build_pixel_maps(args: argparse.Namespace) -> int:
    sources_yaml = load_optional_yaml(args.sources_yaml)
    spec = resolve_source(args.source, sources_yaml)

    layers = load_layer_specs(load_optional_yaml(args.ids_yaml))
    if args.layers:
        wanted = set(args.layers)
        unknown = wanted - {l.name for l in layers}
        if unknown:
            raise SystemExit(f"Unknown layers: {sorted(unknown)}")
        layers = [l for l in layers if l.name in wanted]

    # Lazy import: keeps CLI startup fast, avoids loading geopandas until needed
    from forestclim.geo.grid import ReferenceGrid
    from forestclim.geo.pixel_maps import build_pixel_maps

    grid = ReferenceGrid.from_config(spec.reference_raster, spec.grid)
    print(f"[PIXELMAP] {spec.source}: {grid.describe()}")
    if spec.conus_only:
        print(f"[PIXELMAP] CONUS-only source; coverage {format_bbox(spec.coverage_bbox)}")

    maps = build_pixel_maps(
        args.ids_gpkg,
        grid,
        spec.pixel_map_dir,
        layers,
        exclude_regions=spec.exclude_regions,
        coverage_bbox=spec.coverage_bbox,
        overwrite=args.overwrite,
        dry_run=args.dry_run,
    )

    print("Summary:")
    for name, pm in maps.items():
        n_geoms = pm["geometry_id"].nunique() if not pm.empty else 0
        print(f"  - {name}: {n_geoms} geometries -> {pm['pixel_id'].nunique()} unique pixels")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "build-pixel-maps": _handle_build_pixel_maps,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
