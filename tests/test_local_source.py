#!/usr/bin/env python3

from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
import rasterio
from rasterio.transform import from_origin

from forestclim.config import VariableSpec
from forestclim.extract.extractor import completed_years, extract_years, year_output_path
from forestclim.extract.local import LocalRasterSource
from forestclim.extract.sources import TimeStep

NODATA = -9999.0
TEMPLATE = "{raw_dir}/{var}/{var}_{year}.tif"


def _write_monthly(path, nodata_cell=(3, 3)):
    """4 x 4 cells over (0, 0)-(4, 4); band b value = b * 100 + row * 4 + col."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = np.empty((12, 4, 4), dtype="float32")
    for b in range(12):
        data[b] = (b + 1) * 100 + np.arange(16).reshape(4, 4)
    data[:, nodata_cell[0], nodata_cell[1]] = NODATA
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        width=4,
        height=4,
        count=12,
        dtype="float32",
        crs="EPSG:4326",
        transform=from_origin(0.0, 4.0, 1.0, 1.0),
        nodata=NODATA,
    ) as dst:
        dst.write(data)


def _pixels():
    # cell centres of (row 1, col 2), (row 3, col 3) and one point outside the raster
    return pd.DataFrame({"pixel_id": [6, 15, 99], "x": [2.5, 3.5, 10.5], "y": [2.5, 0.5, 0.5]})


def test_sample_reads_band_per_month(tmp_path):
    _write_monthly(tmp_path / "tavg" / "tavg_2001.tif")
    src = LocalRasterSource(TEMPLATE, ["tavg"], raw_dir=tmp_path)
    steps = src.list_time_steps(2001)
    assert len(steps) == 12

    out = src.sample(_pixels(), steps, ["tavg"])
    assert len(out) == 3 * 12
    march = out[out["month"] == 3].set_index("pixel_id")
    assert march.loc[6, "tavg"] == 306.0
    # nodata and outside-extent pixels are NaN
    assert np.isnan(march.loc[15, "tavg"])
    assert np.isnan(march.loc[99, "tavg"])


def test_missing_file_gives_nan(tmp_path):
    _write_monthly(tmp_path / "tavg" / "tavg_2001.tif")
    src = LocalRasterSource(TEMPLATE, ["tavg"], raw_dir=tmp_path)
    steps = [TimeStep(2002, m) for m in range(1, 13)]
    out = src.sample(_pixels(), steps, ["tavg"])
    assert len(out) == 3 * 12
    assert out["tavg"].isna().all()


def test_available_variables_from_files(tmp_path):
    _write_monthly(tmp_path / "tavg" / "tavg_2001.tif")
    src = LocalRasterSource(TEMPLATE, ["tavg", "prec"], raw_dir=tmp_path)
    assert src.available_variables() == ["tavg"]


def test_decade_band_offset(tmp_path):
    src = LocalRasterSource(
        "{raw_dir}/{var}/wc_{var}_{decade_start}-{decade_end}.tif",
        ["tavg"],
        raw_dir=tmp_path,
        decades=["2000-2009", "2010-2019"],
    )
    assert src.band_for(TimeStep(2000, 1)) == 1
    assert src.band_for(TimeStep(2003, 2)) == 38
    assert src.file_for("tavg", 2012).name == "wc_tavg_2010-2019.tif"
    assert src.file_for("tavg", 1995) is None


def test_daily_steps_and_bands(tmp_path):
    for year in (2000, 2001):
        _write_daily(tmp_path / "t2m" / f"t2m_{year}.tif", n_days=1)
    src = LocalRasterSource(TEMPLATE, ["t2m"], raw_dir=tmp_path, temporal_resolution="daily")
    assert len(src.list_time_steps(2000)) == 366
    assert len(src.list_time_steps(2001)) == 365
    assert src.band_for(TimeStep(2001, 2, 1)) == 32
    assert src.batch_size(365) is None


def test_unknown_resolution_rejected():
    with pytest.raises(ValueError):
        LocalRasterSource(TEMPLATE, ["t"], temporal_resolution="hourly")


def test_extract_years_with_local_source(tmp_path):
    raw = tmp_path / "raw"
    _write_monthly(raw / "tavg" / "tavg_2001.tif")
    src = LocalRasterSource(TEMPLATE, ["tavg"], raw_dir=raw, name="local")
    out_dir = tmp_path / "pixel_values"

    report = extract_years(_pixels(), src, [VariableSpec("tavg", scale=0.1)], [2001], out_dir, "local")
    assert report.completed == [2001]

    df = pd.read_parquet(year_output_path(out_dir, "local", 2001))
    jan = df[df["month"] == 1].set_index("pixel_id")
    assert jan.loc[6, "tavg"] == pytest.approx(10.6)
    assert jan.loc[6, "x"] == 2.5


def test_year_without_file_is_not_written(tmp_path):
    raw = tmp_path / "raw"
    _write_monthly(raw / "tavg" / "tavg_1990.tif")
    src = LocalRasterSource(TEMPLATE, ["tavg"], raw_dir=raw, name="wc")
    out_dir = tmp_path / "pixel_values"

    assert src.list_time_steps(2022) == []
    report = extract_years(_pixels(), src, [VariableSpec("tavg")], [2022], out_dir, "wc")
    assert report.no_data == [2022]
    assert completed_years(out_dir, "wc") == []

    # Once the file shows up the year is extracted
    _write_monthly(raw / "tavg" / "tavg_2022.tif")
    report = extract_years(_pixels(), src, [VariableSpec("tavg")], [2022], out_dir, "wc")
    assert report.completed == [2022]
    assert completed_years(out_dir, "wc") == [2022]


def test_year_outside_decades_is_not_written(tmp_path):
    raw = tmp_path / "raw"
    template = "{raw_dir}/{var}/wc_{var}_{decade_start}-{decade_end}.tif"
    _write_monthly(raw / "tavg" / "wc_tavg_2010-2019.tif")
    src = LocalRasterSource(template, ["tavg"], raw_dir=raw, decades=["2010-2019"], name="wc")
    out_dir = tmp_path / "pixel_values"

    assert len(src.list_time_steps(2010)) == 12
    report = extract_years(_pixels(), src, [VariableSpec("tavg")], [2010, 2023], out_dir, "wc")
    assert report.completed == [2010]
    assert report.no_data == [2023]
    assert completed_years(out_dir, "wc") == [2010]


def _write_daily(path, n_days=365):
    """2 x 2 cells over (0, 0)-(2, 2); band b value = b * 10 + row * 2 + col."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = np.empty((n_days, 2, 2), dtype="float32")
    for b in range(n_days):
        data[b] = (b + 1) * 10 + np.arange(4).reshape(2, 2)
    with rasterio.open(
        path,
        "w",
        driver="GTiff",
        width=2,
        height=2,
        count=n_days,
        dtype="float32",
        crs="EPSG:4326",
        transform=from_origin(0.0, 2.0, 1.0, 1.0),
    ) as dst:
        dst.write(data)


def test_sample_daily_file_by_day_of_year(tmp_path):
    _write_daily(tmp_path / "t2m" / "t2m_2001.tif")
    src = LocalRasterSource(TEMPLATE, ["t2m"], raw_dir=tmp_path, temporal_resolution="daily")
    steps = src.list_time_steps(2001)
    assert len(steps) == 365

    # only the lower-right cell (row 1, col 1) is requested, so the read window is 1 x 1
    pixels = pd.DataFrame({"pixel_id": [3], "x": [1.5], "y": [0.5]})
    out = src.sample(pixels, steps, ["t2m"])
    assert list(out.columns) == ["pixel_id", "year", "month", "day", "t2m"]
    assert len(out) == 365

    by_day = out.set_index(["month", "day"])["t2m"]
    assert by_day.loc[(1, 1)] == 13.0
    assert by_day.loc[(2, 1)] == 32 * 10 + 3
    assert by_day.loc[(12, 31)] == 365 * 10 + 3


def test_daily_band_past_end_of_file_is_nan(tmp_path):
    # a truncated file (e.g. partial download) only has the first 31 days
    _write_daily(tmp_path / "t2m" / "t2m_2001.tif", n_days=31)
    src = LocalRasterSource(TEMPLATE, ["t2m"], raw_dir=tmp_path, temporal_resolution="daily")
    pixels = pd.DataFrame({"pixel_id": [0], "x": [0.5], "y": [1.5]})
    out = src.sample(pixels, src.list_time_steps(2001), ["t2m"])

    jan = out[out["month"] == 1]
    assert jan["t2m"].notna().all()
    assert out[out["month"] > 1]["t2m"].isna().all()
