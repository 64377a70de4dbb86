#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from forestclim.config import VariableSpec
from forestclim.extract.extractor import (
    apply_units,
    completed_years,
    extract_years,
    load_pixel_values,
    year_output_path,
)
from forestclim.extract.sources import (
    SourceRequestError,
    TimeStep,
    VariableAvailabilityError,
    time_columns,
)


class FakeSource:
    """In-memory RasterSource: value = pixel_id * 100 + month."""

    name = "fake"

    def __init__(self, variables=("tmax", "ppt"), batch=2, fail_years=(), empty_years=()):
        self.variables = list(variables)
        self.batch = batch
        self.fail_years = set(fail_years)
        self.empty_years = set(empty_years)
        self.calls = 0
        self.batch_sizes = []

    def available_variables(self):
        self.calls += 1
        return self.variables

    def list_time_steps(self, year):
        self.calls += 1
        if year in self.empty_years:
            return []
        return [TimeStep(year, m) for m in (1, 2, 3)]

    def batch_size(self, n_steps):
        return self.batch

    def sample(self, pixels, steps, variables):
        self.calls += 1
        if steps[0].year in self.fail_years:
            raise SourceRequestError("payload too large")
        self.batch_sizes.append(len(pixels))
        rows = []
        for step in steps:
            for pid in pixels["pixel_id"]:
                row = {"pixel_id": pid, "year": step.year, "month": step.month}
                for v in variables:
                    row[v] = float(pid * 100 + step.month)
                rows.append(row)
        return pd.DataFrame(rows, columns=["pixel_id"] + time_columns(steps) + list(variables))


def _pixels(n=5):
    ids = np.arange(n, dtype="int64")
    return pd.DataFrame({"pixel_id": ids, "x": ids * 0.5, "y": ids * -0.5})


VARS = [VariableSpec("tmax"), VariableSpec("ppt")]


def test_writes_one_file_per_year(tmp_path):
    src = FakeSource()
    report = extract_years(_pixels(), src, VARS, [2000, 2001], tmp_path, "fake")

    assert report.completed == [2000, 2001]
    assert report.ok
    df = pd.read_parquet(year_output_path(tmp_path, "fake", 2000))
    assert list(df.columns) == ["pixel_id", "x", "y", "year", "month", "tmax", "ppt"]
    assert len(df) == 5 * 3
    row = df[(df["pixel_id"] == 4) & (df["month"] == 2)].iloc[0]
    assert row["tmax"] == 402.0
    assert row["x"] == 2.0


def test_pixels_are_batched(tmp_path):
    src = FakeSource(batch=2)
    extract_years(_pixels(5), src, VARS, [2000], tmp_path, "fake")
    assert src.batch_sizes == [2, 2, 1]


def test_existing_years_make_no_source_calls(tmp_path):
    extract_years(_pixels(), FakeSource(), VARS, [2000, 2001], tmp_path, "fake")

    src = FakeSource()
    report = extract_years(_pixels(), src, VARS, [2000, 2001], tmp_path, "fake")
    assert report.skipped == [2000, 2001]
    assert report.completed == []
    assert src.calls == 0


def test_failed_year_is_isolated_and_retried(tmp_path):
    report = extract_years(_pixels(), FakeSource(fail_years={2001}), VARS, [2000, 2001, 2002], tmp_path, "fake")
    assert report.completed == [2000, 2002]
    assert list(report.errors) == [2001]
    assert "payload too large" in report.errors[2001]
    assert not year_output_path(tmp_path, "fake", 2001).exists()
    assert completed_years(tmp_path, "fake") == [2000, 2002]

    report = extract_years(_pixels(), FakeSource(), VARS, [2000, 2001, 2002], tmp_path, "fake")
    assert report.completed == [2001]
    assert report.skipped == [2000, 2002]


def test_scale_and_offset_applied(tmp_path):
    variables = [VariableSpec("tmax", scale=0.1), VariableSpec("ppt", offset=-273.15)]
    extract_years(_pixels(2), FakeSource(), variables, [2000], tmp_path, "fake")
    df = pd.read_parquet(year_output_path(tmp_path, "fake", 2000))
    row = df[(df["pixel_id"] == 1) & (df["month"] == 3)].iloc[0]
    assert row["tmax"] == pytest.approx(10.3)
    assert row["ppt"] == pytest.approx(103 - 273.15)


def test_apply_units_keeps_nan():
    df = pd.DataFrame({"t": [1.0, np.nan]})
    out = apply_units(df, [VariableSpec("t", scale=2.0, offset=1.0)])
    assert out["t"].iloc[0] == 3.0
    assert np.isnan(out["t"].iloc[1])


def test_unavailable_variables_are_dropped(tmp_path):
    variables = VARS + [VariableSpec("swe")]
    extract_years(_pixels(2), FakeSource(), variables, [2000], tmp_path, "fake")
    df = pd.read_parquet(year_output_path(tmp_path, "fake", 2000))
    assert "swe" not in df.columns
    assert "tmax" in df.columns


def test_no_available_variables_raises(tmp_path):
    with pytest.raises(VariableAvailabilityError):
        extract_years(_pixels(2), FakeSource(variables=["other"]), VARS, [2000], tmp_path, "fake")


def test_no_pixels_is_explicit_empty_result(tmp_path):
    src = FakeSource()
    report = extract_years(_pixels(0), src, VARS, [2000], tmp_path, "fake")
    assert report.no_coverage
    assert report.ok
    assert src.calls == 0
    assert completed_years(tmp_path, "fake") == []


def test_year_without_data_is_not_written(tmp_path):
    report = extract_years(_pixels(), FakeSource(empty_years={2001}), VARS, [2000, 2001], tmp_path, "fake")
    assert report.no_data == [2001]
    assert completed_years(tmp_path, "fake") == [2000]


def test_dry_run_writes_nothing(tmp_path):
    src = FakeSource()
    extract_years(_pixels(), src, VARS, [2000], tmp_path, "fake", dry_run=True)
    assert src.calls == 0
    assert completed_years(tmp_path, "fake") == []


def test_completed_years_ledger(tmp_path):
    for name in ("a_2001.parquet", "a_1999.parquet", "b_2000.parquet", "a_xx.parquet", ".a_2003.parquet.partial"):
        (tmp_path / name).write_bytes(b"")
    assert completed_years(tmp_path, "a") == [1999, 2001]
    assert completed_years(tmp_path / "missing", "a") == []


def test_load_pixel_values(tmp_path):
    extract_years(_pixels(2), FakeSource(), VARS, [2000, 2001], tmp_path, "fake")
    assert len(load_pixel_values(tmp_path, "fake")) == 2 * 3 * 2
    only = load_pixel_values(tmp_path, "fake", years=[2001])
    assert set(only["year"]) == {2001}
