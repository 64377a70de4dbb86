#!/usr/bin/env python3
"""water_year.py

Calendar <-> water year conversion.

Water year N runs from October of year N-1 through September of year N:
- calendar month >= 10: water_year = year + 1, water_year_month = month - 9
- calendar month <  10: water_year = year,     water_year_month = month + 3

Water year months: Oct=1, Nov=2, Dec=3, Jan=4, ..., Sep=12.

Survey years are administrative and are never run through this module;
only climate time keys are.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
import pandas as pd


WATER_YEAR_MONTH_LABELS = ("Oct", "Nov", "Dec", "Jan", "Feb", "Mar",
                           "Apr", "May", "Jun", "Jul", "Aug", "Sep")


def _check_month(month: int, what: str) -> None:
    if not 1 <= int(month) <= 12:
        raise ValueError(f"{what} must be in [1, 12], got {month}")


def calendar_to_water(year: int, month: int) -> Tuple[int, int]:
    """Return (water_year, water_year_month) for a calendar (year, month).

    >>> calendar_to_water(2020, 10)
    (2021, 1)
    >>> calendar_to_water(2021, 3)
    (2021, 6)
    """
    _check_month(month, "calendar month")
    if month >= 10:
        return int(year) + 1, int(month) - 9
    return int(year), int(month) + 3


def water_to_calendar(water_year: int, water_year_month: int) -> Tuple[int, int]:
    """Inverse of calendar_to_water."""
    _check_month(water_year_month, "water year month")
    # Water months 1-3 are Oct-Dec of the previous calendar year
    if water_year_month <= 3:
        return int(water_year) - 1, int(water_year_month) + 9
    return int(water_year), int(water_year_month) - 3


def calendar_to_water_arrays(years, months) -> Tuple[np.ndarray, np.ndarray]:
    """Vectorized calendar_to_water for array-likes of equal length."""
    years = np.asarray(years, dtype="int64")
    months = np.asarray(months, dtype="int64")
    if years.shape != months.shape:
        raise ValueError("years and months must have the same length")
    if months.size and ((months < 1).any() or (months > 12).any()):
        raise ValueError("calendar months must be in [1, 12]")
    late = months >= 10
    water_year = np.where(late, years + 1, years)
    water_month = np.where(late, months - 9, months + 3)
    return water_year.astype("int32"), water_month.astype("int32")


def add_water_year(
    df: pd.DataFrame,
    year_col: str = "calendar_year",
    month_col: str = "calendar_month",
) -> pd.DataFrame:
    """Return a copy of df with water_year and water_year_month appended.

    Falls back to `year`/`month` columns if the calendar_* names are absent.
    """
    if year_col not in df.columns or month_col not in df.columns:
        if "year" in df.columns and "month" in df.columns:
            year_col, month_col = "year", "month"
        else:
            raise ValueError(
                "DataFrame must contain (calendar_year, calendar_month) or (year, month) columns."
            )
    out = df.copy()
    wy, wm = calendar_to_water_arrays(out[year_col].to_numpy(), out[month_col].to_numpy())
    out["water_year"] = wy
    out["water_year_month"] = wm
    return out


def water_year_month_label(water_year_month: int) -> str:
    """Month abbreviation for a water year month (1 -> 'Oct')."""
    _check_month(water_year_month, "water year month")
    return WATER_YEAR_MONTH_LABELS[int(water_year_month) - 1]
