#!/usr/bin/env python3
"""forestclim.extract

Climate value extraction CLI for forestclim.

This is one of several forestclim subsystem CLIs:
- forestclim.geo       → pixel maps
- forestclim.extract   → per-pixel climate values from a raster source (this file)
- forestclim.summarize → long-format reshape and observation summaries

Reads every pixel map of a source, extracts the unique pixels year by year
and writes <output_dir>/pixel_values/<prefix>_<year>.parquet.

Design notes:
- Years already on disk are skipped without touching the source
- A failed year is reported and retried on the next run
- Remote sources (Earth Engine) need `earthengine authenticate` first

Examples:
  python -m forestclim.extract run --source terraclimate --start-year 1997 --end-year 2024
  python -m forestclim.extract run --source era5 --variable-mode suggested
  python -m forestclim.extract status --source prism
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import List, Optional

from forestclim.config import (
    load_optional_yaml,
    resolve_source,
    SourceSpec,
    DEFAULT_SOURCES_YAML,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="forestclim.extract",
        description="Extract per-pixel climate values for a source",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Subsystem CLIs:
  python -m forestclim.geo        # Pixel maps
  python -m forestclim.extract    # Pixel value extraction (this)
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
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without writing files")
    ap.add_argument("--overwrite", action="store_true", help="Re-extract years that already exist")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- run ---
    run = sub.add_parser(
        "run",
        help="Extract pixel values year by year",
        description="""
Extract climate values for every pixel referenced by the source's pixel maps.

This command:
1. Loads all <layer>_pixel_map.parquet for the source
2. Collects the unique pixels across layers
3. For each year not yet on disk, samples the source in pixel batches
4. Applies scale/offset and writes <prefix>_<year>.parquet
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run.add_argument("--source", required=True, help="Source id (terraclimate, prism, worldclim, era5)")
    run.add_argument("--start-year", type=int, default=None, help="First year (overrides sources.yaml)")
    run.add_argument("--end-year", type=int, default=None, help="Last year (overrides sources.yaml)")
    run.add_argument(
        "--variable-mode",
        choices=["suggested", "all", "custom"],
        default=None,
        help="Which variables to extract (default: sources.yaml or all)",
    )
    run.add_argument("--variables", nargs="+", default=None, help="Variables for --variable-mode custom")
    run.add_argument("--ee-project", default=None, help="Earth Engine cloud project")

    # --- status ---
    status = sub.add_parser("status", help="Show which years are extracted")
    status.add_argument("--source", required=True, help="Source id")
    status.add_argument("--start-year", type=int, default=None)
    status.add_argument("--end-year", type=int, default=None)

    return ap


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def build_source(spec: SourceSpec, ee_project: Optional[str] = None):
    """Instantiate the RasterSource described by a SourceSpec."""
    if spec.kind == "earthengine":
        if not spec.collection:
            raise SystemExit(f"{spec.source}: 'collection' is required for earthengine sources")
        from forestclim.extract.earthengine import EarthEngineSource, init_ee

        init_ee(ee_project)
        return EarthEngineSource(
            spec.collection,
            temporal_resolution=spec.temporal_resolution,
            scale_m=spec.nominal_scale_m,
            batch_size=spec.batch_size,
            stacked_batch_size=spec.stacked_batch_size,
            name=spec.source,
        )

    if spec.kind == "local":
        if not spec.file_template:
            raise SystemExit(f"{spec.source}: 'file_template' is required for local sources")
        from forestclim.extract.local import LocalRasterSource

        return LocalRasterSource(
            spec.file_template,
            spec.variable_names,
            raw_dir=spec.raw_dir or Path("data/raw/climate") / spec.source,
            temporal_resolution=spec.temporal_resolution,
            decades=spec.decades,
            name=spec.source,
        )

    raise SystemExit(f"{spec.source}: unknown source kind '{spec.kind}' (earthengine | local)")


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_run(args: argparse.Namespace) -> int:
    spec = resolve_source(
        args.source,
        load_optional_yaml(args.sources_yaml),
        variable_mode=args.variable_mode,
        custom_variables=args.variables,
    )
    years = spec.years(args.start_year, args.end_year)

    # Lazy import: keeps CLI startup fast
    from forestclim.extract.extractor import completed_years, extract_years, year_output_path
    from forestclim.geo.pixel_maps import load_pixel_maps, unique_pixels

    maps = load_pixel_maps(spec.pixel_map_dir)
    pixels = unique_pixels(maps.values())
    print(f"[EXTRACT] {spec.source}: {len(maps)} pixel maps, {len(pixels)} unique pixels")
    print(f"[EXTRACT] variables: {', '.join(spec.variable_names)}")

    if args.dry_run:
        done = set(completed_years(spec.pixel_values_dir, spec.output_prefix))
        todo = years if args.overwrite else [y for y in years if y not in done]
        print(f"[EXTRACT] dry run: would extract {len(todo)} of {len(years)} years")
        for y in todo:
            print(f"  - {year_output_path(spec.pixel_values_dir, spec.output_prefix, y)}")
        return 0

    report = extract_years(
        pixels,
        build_source(spec, args.ee_project),
        spec.variables,
        years,
        spec.pixel_values_dir,
        spec.output_prefix,
        overwrite=args.overwrite,
    )
    return 0 if report.ok else 1


def _handle_status(args: argparse.Namespace) -> int:
    spec = resolve_source(args.source, load_optional_yaml(args.sources_yaml))
    from forestclim.extract.extractor import completed_years

    done = completed_years(spec.pixel_values_dir, spec.output_prefix)
    print(f"[EXTRACT] {spec.source}: {spec.pixel_values_dir}")
    print(f"  - completed: {', '.join(map(str, done)) if done else 'none'}")

    start = args.start_year if args.start_year is not None else spec.start_year
    end = args.end_year if args.end_year is not None else spec.end_year
    if start is not None and end is not None:
        pending = [y for y in spec.years(start, end) if y not in set(done)]
        print(f"  - pending:   {', '.join(map(str, pending)) if pending else 'none'}")
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "run": _handle_run,
        "status": _handle_status,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
