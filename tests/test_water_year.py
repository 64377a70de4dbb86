#!/usr/bin/env python3

from __future__ import annotations

import pandas as pd
import pytest

from forestclim.water_year import (
    add_water_year,
    calendar_to_water,
    water_to_calendar,
    water_year_month_label,
)


def test_calendar_to_water_known_cases():
    assert calendar_to_water(2020, 10) == (2021, 1)
    assert calendar_to_water(2021, 3) == (2021, 6)
    assert calendar_to_water(2019, 9) == (2019, 12)
    assert calendar_to_water(2019, 12) == (2020, 3)


def test_round_trip_all_months():
    for year in (1899, 1999, 2000, 2024):
        for month in range(1, 13):
            assert water_to_calendar(*calendar_to_water(year, month)) == (year, month)


@pytest.mark.parametrize("month", [0, 13, -1])
def test_invalid_month_raises(month):
    with pytest.raises(ValueError):
        calendar_to_water(2020, month)
    with pytest.raises(ValueError):
        water_to_calendar(2020, month)


def test_add_water_year_matches_scalar():
    df = pd.DataFrame({"calendar_year": [2020] * 12, "calendar_month": list(range(1, 13))})
    out = add_water_year(df)
    expected = [calendar_to_water(2020, m) for m in range(1, 13)]
    assert list(zip(out["water_year"], out["water_year_month"])) == expected
    # input untouched
    assert "water_year" not in df.columns


def test_add_water_year_accepts_year_month_columns():
    df = pd.DataFrame({"year": [2001], "month": [11]})
    out = add_water_year(df)
    assert out.loc[0, "water_year"] == 2002
    assert out.loc[0, "water_year_month"] == 2


def test_month_labels():
    assert water_year_month_label(1) == "Oct"
    assert water_year_month_label(12) == "Sep"
