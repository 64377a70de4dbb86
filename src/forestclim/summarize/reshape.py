#!/usr/bin/env python3
"""reshape.py

Wide per-year pixel values -> one long table per source.

Input:  <pixel_values_dir>/<prefix>_<year>.parquet
        (pixel_id, x, y, year[, month[, day]], var_1 ... var_k)
Output: <output_dir>/pixel_values.parquet
        (pixel_id, calendar_year[, calendar_month[, day]],
         water_year, water_year_month, variable, value)

Notes:
- Pixels no longer referenced by any current pixel map are dropped (a grid or
  coverage change leaves stale pixels in older year files).
- Water year columns are only added when the data has months.
- Null values are kept; they are coverage gaps, not zeros.
- Not resumable: every run rebuilds and overwrites the output.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import pandas as pd

from forestclim.extract.extractor import completed_years, year_output_path
from forestclim.tables import write_parquet_atomic
from forestclim.water_year import add_water_year


TIME_RENAMES = {"year": "calendar_year", "month": "calendar_month"}
LONG_TIME_ORDER = ["calendar_year", "calendar_month", "day", "water_year", "water_year_month"]


def valid_pixel_ids(pixel_maps: Iterable[pd.DataFrame]) -> set:
    ids = set()
    for pm in pixel_maps:
        ids.update(pm["pixel_id"].astype("int64").tolist())
    return ids


def reshape_year(
    wide: pd.DataFrame,
    valid_pixels: set,
    variables: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """One wide year frame -> long rows for pixels in valid_pixels."""
    time_cols = [c for c in ("year", "month", "day") if c in wide.columns]
    value_cols = [
        c for c in wide.columns if c not in {"pixel_id", "x", "y", *time_cols}
    ]
    if variables is not None:
        value_cols = [c for c in value_cols if c in set(variables)]

    wide = wide[wide["pixel_id"].isin(valid_pixels)]
    long = wide.melt(
        id_vars=["pixel_id"] + time_cols,
        value_vars=value_cols,
        var_name="variable",
        value_name="value",
    ).rename(columns=TIME_RENAMES)

    if "calendar_month" in long.columns:
        long = add_water_year(long)

    cols = ["pixel_id"] + [c for c in LONG_TIME_ORDER if c in long.columns] + ["variable", "value"]
    return long[cols].astype({"value": "float64"})


def reshape_pixel_values(
    pixel_values_dir: Path,
    prefix: str,
    pixel_maps: Iterable[pd.DataFrame],
    out_path: Path,
    *,
    variables: Optional[Sequence[str]] = None,
    years: Optional[Sequence[int]] = None,
) -> pd.DataFrame:
    """Build the long pixel value table from every extracted year and write it."""
    valid = valid_pixel_ids(pixel_maps)
    print(f"[RESHAPE] {len(valid)} pixels referenced by current pixel maps")

    available = completed_years(pixel_values_dir, prefix)
    if years is not None:
        available = [y for y in available if y in set(years)]
    if not available:
        raise SystemExit(f"No {prefix}_<year>.parquet files found in {pixel_values_dir}")
    print(f"[RESHAPE] {len(available)} year files: {available[0]}-{available[-1]}")

    parts: List[pd.DataFrame] = []
    n_stale = 0
    for year in available:
        wide = pd.read_parquet(year_output_path(pixel_values_dir, prefix, year))
        n_stale += int((~wide["pixel_id"].isin(valid)).sum())
        part = reshape_year(wide, valid, variables)
        parts.append(part)
        print(f"  {year}: {len(part)} rows")

    if n_stale:
        print(f"[RESHAPE] dropped {n_stale} rows for pixels not in any pixel map")

    long = pd.concat(parts, ignore_index=True)
    write_parquet_atomic(long, out_path)
    print(f"[RESHAPE] saved {len(long)} rows -> {out_path}")
    return long
