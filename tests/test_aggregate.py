#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from forestclim.summarize.aggregate import (
    build_observation_summaries,
    summaries_path,
    summarize_layer,
)
from forestclim.tables import write_parquet_atomic


def _values(rows):
    df = pd.DataFrame(rows, columns=["pixel_id", "variable", "value"])
    df["calendar_year"] = 2020
    df["calendar_month"] = 7
    df["water_year"] = 2020
    df["water_year_month"] = 10
    return df


def _pixel_map():
    return pd.DataFrame(
        {"geometry_id": [1, 1], "pixel_id": [100, 101], "coverage_fraction": [0.3, 0.7]}
    )


def test_weighted_mean_two_pixels():
    out = build_observation_summaries(_pixel_map(), _values([(100, "t", 10.0), (101, "t", 20.0)]))
    assert len(out) == 1
    row = out.iloc[0]
    assert row["weighted_mean"] == pytest.approx(17.0)
    assert row["n_pixels"] == 2
    assert row["n_pixels_with_data"] == 2
    assert row["sum_coverage_fraction"] == pytest.approx(1.0)


def test_null_pixel_is_excluded_not_zero():
    out = build_observation_summaries(_pixel_map(), _values([(100, "t", np.nan), (101, "t", 20.0)]))
    row = out.iloc[0]
    assert row["weighted_mean"] == pytest.approx(20.0)
    assert row["n_pixels"] == 2
    assert row["n_pixels_with_data"] == 1


def test_all_null_gives_null_mean():
    out = build_observation_summaries(_pixel_map(), _values([(100, "t", np.nan), (101, "t", np.nan)]))
    row = out.iloc[0]
    assert np.isnan(row["weighted_mean"])
    assert row["n_pixels_with_data"] == 0


def test_output_schema_and_per_variable_rows():
    values = _values([(100, "t", 1.0), (101, "t", 2.0), (100, "p", 3.0), (101, "p", 4.0)])
    out = build_observation_summaries(_pixel_map(), values)
    assert list(out.columns) == [
        "geometry_id", "calendar_year", "calendar_month", "water_year", "water_year_month",
        "variable", "weighted_mean", "n_pixels", "n_pixels_with_data", "sum_coverage_fraction",
    ]
    assert sorted(out["variable"]) == ["p", "t"]


def test_pancake_rows_counted_once():
    # Two observations share geometry 1; each pixel appears twice in the map
    pm = pd.DataFrame(
        {
            "observation_id": [1, 1, 2, 2],
            "geometry_id": [1, 1, 1, 1],
            "pixel_id": [100, 101, 100, 101],
            "x": 0.0,
            "y": 0.0,
            "coverage_fraction": [0.3, 0.7, 0.3, 0.7],
        }
    )
    out = build_observation_summaries(pm, _values([(100, "t", 10.0), (101, "t", 20.0)]))
    assert len(out) == 1
    assert out.iloc[0]["n_pixels"] == 2
    assert out.iloc[0]["weighted_mean"] == pytest.approx(17.0)


def test_missing_group_column_raises():
    with pytest.raises(ValueError):
        build_observation_summaries(_pixel_map(), _values([]), group_col="observation_id")


def test_summarize_layer_writes_and_skips(tmp_path):
    pm_path = write_parquet_atomic(_pixel_map(), tmp_path / "damage_areas_pixel_map.parquet")
    pv_path = write_parquet_atomic(
        _values([(100, "t", 10.0), (101, "t", 20.0), (100, "p", 1.0), (101, "p", 1.0)]),
        tmp_path / "pixel_values.parquet",
    )
    out = summaries_path(tmp_path, "damage_areas")

    summaries = summarize_layer(pm_path, pv_path, out, variables=["t"])
    assert out.exists()
    assert set(summaries["variable"]) == {"t"}

    assert summarize_layer(pm_path, pv_path, out) is None
    rebuilt = summarize_layer(pm_path, pv_path, out, overwrite=True)
    assert set(rebuilt["variable"]) == {"t", "p"}
