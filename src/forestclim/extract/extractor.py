#!/usr/bin/env python3
"""extractor.py

Batched extraction of per-pixel climate values, one parquet per year.

Resume contract:
- <output_dir>/<prefix>_<year>.parquet exists  -> year is done, skipped with
  no source requests at all
- a year is written only after every batch of that year succeeded, and the
  write is atomic, so an interrupted or failed year leaves no file and is
  retried on the next run
- a failed request (SourceRequestError) abandons that year, is recorded in
  the report, and the run continues with the next year

Values are converted to physical units before writing
(value * scale + offset), so downstream stages never rescale.

Wide output schema:
    pixel_id, x, y, year[, month[, day]], <variable_1> ... <variable_k>
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pandas as pd

from forestclim.config import VariableSpec
from forestclim.extract.sources import (
    RasterSource,
    SourceRequestError,
    empty_sample,
    time_columns,
    validate_variables,
)
from forestclim.tables import write_parquet_atomic


@dataclass
class ExtractionReport:
    source: str
    completed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    no_data: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)
    no_coverage: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary_lines(self) -> List[str]:
        lines = [
            f"[EXTRACT] {self.source}: {len(self.completed)} completed, "
            f"{len(self.skipped)} skipped, {len(self.no_data)} without data, "
            f"{len(self.errors)} errored"
        ]
        if self.no_coverage:
            lines.append("  - no pixels to extract (no coverage for this source)")
        for year, msg in sorted(self.errors.items()):
            lines.append(f"  - {year}: {msg}")
        return lines


# -----------------------------------------------------------------------------
# Output ledger
# -----------------------------------------------------------------------------

def year_output_path(output_dir: Path, prefix: str, year: int) -> Path:
    return Path(output_dir) / f"{prefix}_{int(year)}.parquet"


def completed_years(output_dir: Path, prefix: str) -> List[int]:
    """Years whose output file exists (the resume ledger)."""
    output_dir = Path(output_dir)
    if not output_dir.exists():
        return []
    pat = re.compile(rf"^{re.escape(prefix)}_(\d{{4}})\.parquet$")
    years = []
    for p in output_dir.iterdir():
        m = pat.match(p.name)
        if m:
            years.append(int(m.group(1)))
    return sorted(years)


def load_pixel_values(output_dir: Path, prefix: str, years: Optional[Sequence[int]] = None) -> pd.DataFrame:
    """Concatenate wide per-year files, optionally restricted to `years`."""
    wanted = completed_years(output_dir, prefix)
    if years is not None:
        wanted = [y for y in wanted if y in set(years)]
    frames = [pd.read_parquet(year_output_path(output_dir, prefix, y)) for y in wanted]
    if not frames:
        return pd.DataFrame()
    return pd.concat(frames, ignore_index=True)


# -----------------------------------------------------------------------------
# Unit handling
# -----------------------------------------------------------------------------

def apply_units(df: pd.DataFrame, variables: Sequence[VariableSpec]) -> pd.DataFrame:
    """physical = raw * scale + offset, per variable column present in df."""
    out = df.copy()
    for var in variables:
        if var.name not in out.columns:
            continue
        col = out[var.name].astype("float64")
        if var.scale != 1.0:
            col = col * var.scale
        if var.offset != 0.0:
            col = col + var.offset
        out[var.name] = col
    return out


# -----------------------------------------------------------------------------
# Extraction
# -----------------------------------------------------------------------------

def _batches(pixels: pd.DataFrame, size: Optional[int]):
    if not size or size >= len(pixels):
        yield pixels
        return
    for start in range(0, len(pixels), size):
        yield pixels.iloc[start:start + size]


def extract_year(
    source: RasterSource,
    pixels: pd.DataFrame,
    year: int,
    variables: Sequence[VariableSpec],
) -> Optional[pd.DataFrame]:
    """All values for one year, or None if the source has no time steps for it.

    Raises SourceRequestError if any batch fails; nothing is returned then.
    """
    steps = source.list_time_steps(year)
    if not steps:
        return None

    names = [v.name for v in variables]
    size = source.batch_size(len(steps))
    parts = []
    n_batches = 1 if not size else -(-len(pixels) // size)
    for i, batch in enumerate(_batches(pixels, size), start=1):
        parts.append(source.sample(batch, steps, names))
        if n_batches > 1:
            print(f"    batch {i}/{n_batches}")

    raw = pd.concat(parts, ignore_index=True) if parts else empty_sample(steps, names)
    out = apply_units(raw, variables)

    coords = pixels[["pixel_id", "x", "y"]].drop_duplicates(subset="pixel_id")
    out = out.merge(coords, on="pixel_id", how="left")
    cols = ["pixel_id", "x", "y"] + time_columns(steps) + names
    return out[cols]


def extract_years(
    pixels: pd.DataFrame,
    source: RasterSource,
    variables: Sequence[VariableSpec],
    years: Sequence[int],
    output_dir: Path,
    output_prefix: str,
    *,
    overwrite: bool = False,
    dry_run: bool = False,
) -> ExtractionReport:
    """Extract every year not yet on disk. Never raises for a single bad year."""
    report = ExtractionReport(source=getattr(source, "name", str(source)))
    pixels = pixels[["pixel_id", "x", "y"]].drop_duplicates(subset="pixel_id").reset_index(drop=True)

    if pixels.empty:
        report.no_coverage = True
        print(f"[EXTRACT] {report.source}: no pixels to extract")
        return report

    print(
        f"[EXTRACT] {len(variables)} variables for {len(pixels)} unique pixels "
        f"across {len(years)} years"
    )

    usable: Optional[List[VariableSpec]] = None
    for year in years:
        out_path = year_output_path(output_dir, output_prefix, year)
        if out_path.exists() and not overwrite:
            print(f"[SKIP] {year}: exists")
            report.skipped.append(int(year))
            continue

        if dry_run:
            print(f"  {year}: would write {out_path}")
            continue

        t0 = time.time()
        print(f"  {year}: extracting")
        try:
            # Validated lazily so a fully-resumed run makes no requests
            if usable is None:
                keep = set(validate_variables(source, [v.name for v in variables]))
                usable = [v for v in variables if v.name in keep]
            year_data = extract_year(source, pixels, year, usable)
        except SourceRequestError as e:
            print(f"[ERROR] {year}: {e}")
            report.errors[int(year)] = str(e)
            continue

        if year_data is None:
            print(f"  {year}: source has no data for this year")
            report.no_data.append(int(year))
            continue

        write_parquet_atomic(year_data, out_path)
        report.completed.append(int(year))
        print(f"  {year}: saved {len(year_data)} rows ({(time.time() - t0) / 60:.1f} min)")

    for line in report.summary_lines():
        print(line)
    return report
