#!/usr/bin/env python3
"""local.py

Local raster source: one multi-band file per (variable, coarse time unit),
read with rasterio (GeoTIFF, NetCDF, anything GDAL opens).

File layouts supported, all described by a `file_template`:
- per-year monthly files, 12 bands:          {raw_dir}/{var}/{var}_{year}.tif
- per-decade monthly files (WorldClim), band (year - decade_start) * 12 + month:
      {raw_dir}/{var}/wc2.1_2.5m_{var}_{decade_start}-{decade_end}.tif
- per-year daily files (ERA5), band = day of year: {raw_dir}/{var}/{var}_{year}.nc
- static climatology, band = month

Only the band for the requested step is read, and only the window covering
the requested pixels, so large daily files are never fully materialized.

A missing file, a band index past the end of the file, a nodata cell or a
pixel outside the file's extent are all NaN.
A year with no file for any variable lists no time steps at all, so the
extractor reports it as having no data and does not write it.
"""

from __future__ import annotations

import glob
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import rasterio
from rasterio.errors import RasterioIOError
from rasterio.transform import rowcol
from rasterio.windows import Window

from forestclim.extract.sources import SourceRequestError, TimeStep, empty_sample, time_columns


def _parse_decade(decade: str) -> Tuple[int, int]:
    start, end = (int(p) for p in str(decade).split("-"))
    return start, end


class LocalRasterSource:
    """RasterSource over local multi-band raster files."""

    def __init__(
        self,
        file_template: str,
        variables: Sequence[str],
        *,
        raw_dir: Optional[Path] = None,
        temporal_resolution: str = "monthly",
        decades: Sequence[str] = (),
        name: str = "local",
    ):
        if temporal_resolution not in ("monthly", "monthly_climatology", "daily", "annual"):
            raise ValueError(f"Unsupported temporal resolution: {temporal_resolution}")
        self.file_template = file_template
        self.variables = list(variables)
        self.raw_dir = Path(raw_dir) if raw_dir is not None else Path(".")
        self.temporal_resolution = temporal_resolution
        self.decades = [_parse_decade(d) for d in decades]
        self.name = name

    # --- file / band resolution -----------------------------------------------

    def _decade_for(self, year: int) -> Optional[Tuple[int, int]]:
        for start, end in self.decades:
            if start <= year <= end:
                return start, end
        return None

    def file_for(self, variable: str, year: int) -> Optional[Path]:
        """Path of the file holding (variable, year), or None if unmapped."""
        ctx = {"raw_dir": str(self.raw_dir), "var": variable, "year": int(year)}
        if self.decades:
            decade = self._decade_for(year)
            if decade is None:
                return None
            ctx.update(decade_start=decade[0], decade_end=decade[1])
        try:
            return Path(self.file_template.format(**ctx))
        except KeyError as e:
            raise KeyError(f"Missing key for file_template: {e.args[0]}") from e

    def band_for(self, step: TimeStep) -> int:
        """1-based band index of a time step inside its file."""
        if self.temporal_resolution == "annual":
            return 1
        if self.temporal_resolution == "daily":
            return date(step.year, step.month, step.day).timetuple().tm_yday
        if self.decades and self.temporal_resolution == "monthly":
            decade = self._decade_for(step.year)
            return (step.year - decade[0]) * 12 + int(step.month)
        return int(step.month)

    # --- RasterSource ---------------------------------------------------------

    def available_variables(self) -> List[str]:
        out = []
        for var in self.variables:
            pattern = self.file_template.format(
                raw_dir=str(self.raw_dir), var=var, year="*", decade_start="*", decade_end="*"
            )
            if glob.glob(pattern):
                out.append(var)
        return out

    def has_files_for(self, year: int) -> bool:
        """True if at least one variable has a file on disk for `year`."""
        for var in self.variables:
            path = self.file_for(var, year)
            if path is not None and path.exists():
                return True
        return False

    def list_time_steps(self, year: int) -> List[TimeStep]:
        # No file on disk (or no decade mapping) means no steps for the year
        if not self.has_files_for(year):
            print(f"  [WARN] {self.name}: no files for {year}")
            return []
        if self.temporal_resolution == "annual":
            return [TimeStep(int(year))]
        if self.temporal_resolution == "daily":
            day = date(int(year), 1, 1)
            steps = []
            while day.year == year:
                steps.append(TimeStep(day.year, day.month, day.day))
                day += timedelta(days=1)
            return steps
        return [TimeStep(int(year), m) for m in range(1, 13)]

    def batch_size(self, n_steps: int) -> Optional[int]:
        return None

    def _sample_file(
        self,
        path: Path,
        pixels: pd.DataFrame,
        steps: Sequence[TimeStep],
    ) -> Dict[TimeStep, np.ndarray]:
        """Values per step for every pixel from one file."""
        n = len(pixels)
        out = {step: np.full(n, np.nan) for step in steps}
        try:
            with rasterio.open(path) as src:
                rows, cols = rowcol(
                    src.transform, pixels["x"].to_numpy(), pixels["y"].to_numpy()
                )
                rows, cols = np.asarray(rows), np.asarray(cols)
                inside = (rows >= 0) & (rows < src.height) & (cols >= 0) & (cols < src.width)
                if not inside.any():
                    return out

                r0, r1 = rows[inside].min(), rows[inside].max()
                c0, c1 = cols[inside].min(), cols[inside].max()
                window = Window(int(c0), int(r0), int(c1 - c0 + 1), int(r1 - r0 + 1))
                rr, cc = rows[inside] - r0, cols[inside] - c0

                for step in steps:
                    band = self.band_for(step)
                    if band > src.count:
                        continue
                    data = src.read(band, window=window, masked=True)
                    vals = np.ma.filled(data[rr, cc].astype("float64"), np.nan)
                    out[step][inside] = vals
        except RasterioIOError as e:
            raise SourceRequestError(f"{self.name}: could not read {path}: {e}") from e
        return out

    def sample(
        self,
        pixels: pd.DataFrame,
        steps: Sequence[TimeStep],
        variables: Sequence[str],
    ) -> pd.DataFrame:
        if pixels.empty or not steps:
            return empty_sample(steps, variables)

        # Group steps by the file that holds them (one file per year or decade)
        by_file: Dict[Tuple[str, Optional[Path]], List[TimeStep]] = {}
        for var in variables:
            for step in steps:
                by_file.setdefault((var, self.file_for(var, step.year)), []).append(step)

        values: Dict[str, Dict[TimeStep, np.ndarray]] = {v: {} for v in variables}
        for (var, path), var_steps in by_file.items():
            if path is None or not path.exists():
                print(f"  [WARN] missing {var} file for {var_steps[0].year}: {path}")
                continue
            values[var].update(self._sample_file(path, pixels, var_steps))

        tcols = time_columns(steps)
        pixel_ids = pixels["pixel_id"].to_numpy(dtype="int64")
        frames = []
        for step in steps:
            part = pd.DataFrame({"pixel_id": pixel_ids})
            for col, val in zip(("year", "month", "day"), step):
                if col in tcols:
                    part[col] = val
            for var in variables:
                part[var] = values[var].get(step, np.full(len(pixel_ids), np.nan))
            frames.append(part)
        return pd.concat(frames, ignore_index=True)
