#!/usr/bin/env python3
"""aggregate.py

Coverage-weighted climate summaries per geometry.

For each geometry, time step and variable:

    weighted_mean = sum(value * coverage_fraction) / sum(coverage_fraction)

over pixels whose value is not null. Null pixels are left out of both sums,
so a geometry with no data at all gets a null mean (never 0).

Diagnostics carried with every row:
- n_pixels               all pixels associated with the geometry
- n_pixels_with_data     pixels that contributed to the mean
- sum_coverage_fraction  coverage summed over all associated pixels

Variables are processed one at a time; joining every variable at once
against a multi-million row pixel map does not fit in memory.

Output schema:
    geometry_id, calendar_year, calendar_month[, day], water_year,
    water_year_month, variable, weighted_mean, n_pixels,
    n_pixels_with_data, sum_coverage_fraction
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import numpy as np
import pandas as pd

from forestclim.summarize.reshape import LONG_TIME_ORDER
from forestclim.tables import read_parquet, write_parquet_atomic


SUMMARY_COLUMNS = [
    "variable",
    "weighted_mean",
    "n_pixels",
    "n_pixels_with_data",
    "sum_coverage_fraction",
]


def _summarize_variable(
    joined: pd.DataFrame,
    group_cols: List[str],
) -> pd.DataFrame:
    has_data = joined["value"].notna()
    work = pd.DataFrame(
        {
            **{c: joined[c] for c in group_cols},
            "has_data": has_data.astype("int64"),
            "weighted": (joined["value"] * joined["coverage_fraction"]).where(has_data, 0.0),
            "data_cf": joined["coverage_fraction"].where(has_data, 0.0),
            "coverage_fraction": joined["coverage_fraction"],
        }
    )
    out = (
        work.groupby(group_cols, sort=True, dropna=False)
        .agg(
            n_pixels=("coverage_fraction", "size"),
            n_pixels_with_data=("has_data", "sum"),
            weighted=("weighted", "sum"),
            data_cf=("data_cf", "sum"),
            sum_coverage_fraction=("coverage_fraction", "sum"),
        )
        .reset_index()
    )
    denom = out["data_cf"].where(out["data_cf"] > 0)
    out["weighted_mean"] = out["weighted"] / denom
    return out.drop(columns=["weighted", "data_cf"])


def build_observation_summaries(
    pixel_map: pd.DataFrame,
    pixel_values: pd.DataFrame,
    group_col: str = "geometry_id",
) -> pd.DataFrame:
    """Weighted means of long pixel values per `group_col`, time step and variable.

    `pixel_map` is reduced to unique (group_col, pixel_id, coverage_fraction)
    first, so pancake observations sharing a geometry are counted once.
    """
    if group_col not in pixel_map.columns:
        raise ValueError(f"Pixel map has no '{group_col}' column")

    pm = pixel_map[[group_col, "pixel_id", "coverage_fraction"]].drop_duplicates()
    time_cols = [c for c in LONG_TIME_ORDER if c in pixel_values.columns]
    group_cols = [group_col] + time_cols

    results = []
    for var, part in pixel_values.groupby("variable", sort=False):
        joined = pm.merge(part[["pixel_id"] + time_cols + ["value"]], on="pixel_id", how="inner")
        if joined.empty:
            print(f"  {var}: no matching pixels, skipped")
            continue
        summary = _summarize_variable(joined, group_cols)
        summary["variable"] = var
        results.append(summary)
        print(f"  {var}: {len(summary)} summaries")

    cols = group_cols + SUMMARY_COLUMNS
    if not results:
        return pd.DataFrame(columns=cols)
    out = pd.concat(results, ignore_index=True)[cols]
    out["n_pixels"] = out["n_pixels"].astype("int64")
    out["n_pixels_with_data"] = out["n_pixels_with_data"].astype("int64")
    out["weighted_mean"] = out["weighted_mean"].astype("float64")
    return out


def summaries_path(output_dir: Path, layer: str) -> Path:
    return Path(output_dir) / f"{layer}_summaries_long.parquet"


def summarize_layer(
    pixel_map_path: Path,
    pixel_values_path: Path,
    out_path: Path,
    *,
    group_col: str = "geometry_id",
    variables: Optional[List[str]] = None,
    overwrite: bool = False,
) -> Optional[pd.DataFrame]:
    """Read a layer pixel map and the long pixel values, write summaries."""
    out_path = Path(out_path)
    if out_path.exists() and not overwrite:
        print(f"[SKIP] {out_path.name} exists (use --overwrite to rebuild)")
        return None

    pixel_map = read_parquet(pixel_map_path)
    print(
        f"[SUMMARY] pixel map: {len(pixel_map)} rows, "
        f"{pixel_map[group_col].nunique()} {group_col}s, "
        f"{pixel_map['pixel_id'].nunique()} pixels"
    )

    filters = [("variable", "in", list(variables))] if variables else None
    if not Path(pixel_values_path).exists():
        raise SystemExit(f"Pixel values not found: {pixel_values_path} (run reshape first)")
    values = pd.read_parquet(pixel_values_path, filters=filters)
    print(f"[SUMMARY] pixel values: {len(values)} rows, {values['variable'].nunique()} variables")

    summaries = build_observation_summaries(pixel_map, values, group_col=group_col)
    write_parquet_atomic(summaries, out_path)

    if not summaries.empty:
        n_null = int(summaries["weighted_mean"].isna().sum())
        print(
            f"[SUMMARY] saved {len(summaries)} rows -> {out_path.name} "
            f"({n_null} without data, median n_pixels {np.median(summaries['n_pixels']):.0f})"
        )
    else:
        print(f"[SUMMARY] saved empty summary -> {out_path.name}")
    return summaries
