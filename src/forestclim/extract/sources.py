#!/usr/bin/env python3
"""sources.py

The interface every climate raster source implements.

A source knows how to:
- list the time steps it has for a year
- report which variables (bands) it actually carries
- sample a set of pixel coordinates for several time steps at once

`sample()` returns raw values in source units, one row per pixel per time
step, with a column per variable. Unit conversion is the extractor's job.
Missing data (no file, no band, masked cell) is NaN, never an exception.
Request/read failures are raised as SourceRequestError so the extractor can
abandon that batch and move on.
"""

from __future__ import annotations

from typing import List, NamedTuple, Optional, Protocol, Sequence

import pandas as pd


class SourceRequestError(RuntimeError):
    """A request to the raster source failed (timeout, payload, I/O)."""


class VariableAvailabilityError(ValueError):
    """None of the requested variables exist at the source."""


class TimeStep(NamedTuple):
    year: int
    month: Optional[int] = None
    day: Optional[int] = None

    @property
    def key(self) -> str:
        """Short label used in stacked band names (e.g. '03' or '0117')."""
        if self.day is not None:
            return f"{self.month:02d}{self.day:02d}"
        if self.month is not None:
            return f"{self.month:02d}"
        return "yr"


def time_columns(steps: Sequence[TimeStep]) -> List[str]:
    if not steps:
        return ["year"]
    if steps[0].day is not None:
        return ["year", "month", "day"]
    if steps[0].month is not None:
        return ["year", "month"]
    return ["year"]


class RasterSource(Protocol):
    name: str

    def list_time_steps(self, year: int) -> List[TimeStep]:
        ...

    def available_variables(self) -> List[str]:
        ...

    def batch_size(self, n_steps: int) -> Optional[int]:
        """Max pixels per sample() call, or None for no limit."""
        ...

    def sample(
        self,
        pixels: pd.DataFrame,
        steps: Sequence[TimeStep],
        variables: Sequence[str],
    ) -> pd.DataFrame:
        """Columns: pixel_id, <time columns>, *variables."""
        ...


def validate_variables(source: RasterSource, requested: Sequence[str]) -> List[str]:
    """Keep only requested variables the source carries, warning about the rest."""
    available = set(source.available_variables())
    keep = [v for v in requested if v in available]
    missing = [v for v in requested if v not in available]
    if missing:
        print(f"[WARN] {source.name}: variables not available and skipped: {', '.join(missing)}")
    if not keep:
        raise VariableAvailabilityError(
            f"None of the requested variables are available in {source.name}: {list(requested)}"
        )
    return keep


def empty_sample(steps: Sequence[TimeStep], variables: Sequence[str]) -> pd.DataFrame:
    cols = ["pixel_id"] + time_columns(steps) + list(variables)
    return pd.DataFrame({c: pd.Series(dtype="float64") for c in cols})
