#!/usr/bin/env python3
"""forestclim.summarize

Reshape and summary CLI for forestclim.

This is one of several forestclim subsystem CLIs:
- forestclim.geo       → pixel maps
- forestclim.extract   → per-pixel climate values from a raster source
- forestclim.summarize → long-format reshape and observation summaries (this file)

Outputs (per source, under <output_dir>/):
- pixel_values.parquet                 → long pixel values, calendar + water year
- <layer>_summaries_long.parquet       → coverage-weighted means per geometry

Design notes:
- reshape always rebuilds its output
- summaries are skipped if present unless --overwrite

Examples:
  python -m forestclim.summarize reshape --source terraclimate
  python -m forestclim.summarize summaries --source terraclimate --layer damage_areas
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from forestclim.config import (
    load_optional_yaml,
    resolve_source,
    DEFAULT_SOURCES_YAML,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="forestclim.summarize",
        description="Reshape pixel values and build observation climate summaries",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m forestclim.geo        # Pixel maps
  python -m forestclim.extract    # Pixel value extraction
  python -m forestclim.summarize  # Reshape + observation summaries (this)
        """,
    )

    # --- Global args ---
    ap.add_argument(
        "--sources-yaml",
        type=Path,
        default=DEFAULT_SOURCES_YAML,
        help=f"Path to sources YAML (default: {DEFAULT_SOURCES_YAML})",
    )
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Rebuild summaries that already exist")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- reshape ---
    reshape = sub.add_parser(
        "reshape",
        help="Wide per-year pixel values -> one long table",
        description="""
Reshape every <prefix>_<year>.parquet of a source into pixel_values.parquet.

This command:
1. Collects the pixel ids of all current pixel maps
2. Melts each year to (pixel, time, variable, value), dropping stale pixels
3. Adds water_year / water_year_month
4. Overwrites <output_dir>/pixel_values.parquet
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    reshape.add_argument("--source", required=True, help="Source id")
    reshape.add_argument("--variables", nargs="+", default=None, help="Subset of variables (default: all)")

    # --- summaries ---
    summaries = sub.add_parser(
        "summaries",
        help="Coverage-weighted means per geometry",
        description="""
Join a layer's pixel map to the long pixel values and compute, per geometry,
time step and variable, the coverage-weighted mean with pixel diagnostics.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    summaries.add_argument("--source", required=True, help="Source id")
    summaries.add_argument("--layer", default="damage_areas", help="Observation layer (default: damage_areas)")
    summaries.add_argument("--variables", nargs="+", default=None, help="Subset of variables (default: all)")

    return ap


def long_values_path(output_dir: Path) -> Path:
    return Path(output_dir) / "pixel_values.parquet"


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_reshape(args: argparse.Namespace) -> int:
    spec = resolve_source(args.source, load_optional_yaml(args.sources_yaml))
    out_path = long_values_path(spec.output_dir)

    if args.dry_run:
        print("[dry-run] Would reshape pixel values:")
        print(f"  Year files: {spec.pixel_values_dir}/{spec.output_prefix}_<year>.parquet")
        print(f"  Pixel maps: {spec.pixel_map_dir}")
        print(f"  Output:     {out_path}")
        return 0

    # Lazy import: avoid loading pandas/pyarrow until needed
    from forestclim.geo.pixel_maps import load_pixel_maps
    from forestclim.summarize.reshape import reshape_pixel_values

    maps = load_pixel_maps(spec.pixel_map_dir)
    reshape_pixel_values(
        spec.pixel_values_dir,
        spec.output_prefix,
        maps.values(),
        out_path,
        variables=args.variables,
    )
    return 0


def _handle_summaries(args: argparse.Namespace) -> int:
    spec = resolve_source(args.source, load_optional_yaml(args.sources_yaml))

    from forestclim.geo.pixel_maps import pixel_map_path
    from forestclim.summarize.aggregate import summaries_path, summarize_layer

    pm_path = pixel_map_path(spec.pixel_map_dir, args.layer)
    out_path = summaries_path(spec.output_dir, args.layer)

    if args.dry_run:
        print("[dry-run] Would build summaries:")
        print(f"  Pixel map:    {pm_path}")
        print(f"  Pixel values: {long_values_path(spec.output_dir)}")
        print(f"  Output:       {out_path}")
        return 0

    print(f"[SUMMARY] {spec.source} / {args.layer}")
    summarize_layer(
        pm_path,
        long_values_path(spec.output_dir),
        out_path,
        variables=args.variables,
        overwrite=args.overwrite,
    )
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "reshape": _handle_reshape,
        "summaries": _handle_summaries,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
