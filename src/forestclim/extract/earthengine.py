#!/usr/bin/env python3
"""earthengine.py

Remote raster source backed by a Google Earth Engine ImageCollection
(TerraClimate, PRISM, WorldClim monthly, ERA5 daily).

Round-trip strategy:
- All time steps of a year are packed into ONE multi-band image, band names
  `{variable}_{step}` (e.g. tmmx_01 ... pdsi_12), and sampled with a single
  sampleRegions() call per pixel batch. For monthly data that is ~12x fewer
  requests than one call per (month, batch).
- The price is a larger response per pixel, so stacked requests use a
  smaller pixel batch (`stacked_batch_size`, tunable per source).
- The wide response is unpacked back to one row per pixel per time step.

Time steps missing from the collection are left out of the stack and come
back as NaN columns. Pixels that Earth Engine drops (fully masked) come back
as NaN rows.

Pixel coordinates must be lon/lat (EPSG:4326), which is what Earth Engine
point geometries expect.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence

import ee
import numpy as np
import pandas as pd

from forestclim.extract.sources import SourceRequestError, TimeStep, empty_sample, time_columns


REQUEST_ERRORS = (ee.EEException, OSError)

_ee_initialized = False


def init_ee(project: Optional[str] = None) -> None:
    """Initialize the Earth Engine API once per process."""
    global _ee_initialized
    if _ee_initialized:
        return
    try:
        if project:
            ee.Initialize(project=project)
        else:
            ee.Initialize()
    except REQUEST_ERRORS as e:
        raise SystemExit(
            f"Could not initialize Earth Engine ({e}). Have you run 'earthengine authenticate'?"
        ) from e
    _ee_initialized = True
    print(f"[EE] initialized (project={project or 'default'})")


# -----------------------------------------------------------------------------
# Pure helpers (payload building / unpacking)
# -----------------------------------------------------------------------------

def stacked_band_name(variable: str, step: TimeStep) -> str:
    return f"{variable}_{step.key}"


def pixels_to_geojson(pixels: pd.DataFrame) -> Dict[str, Any]:
    """FeatureCollection dict for a batch of pixels, carrying pixel_id only.

    Built client-side in one go; Earth Engine accepts the dict directly.
    """
    features = [
        {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [float(x), float(y)]},
            "properties": {"pixel_id": int(pid)},
        }
        for pid, x, y in zip(pixels["pixel_id"].tolist(), pixels["x"].tolist(), pixels["y"].tolist())
    ]
    return {"type": "FeatureCollection", "features": features}


def parse_sample_response(info: Dict[str, Any]) -> pd.DataFrame:
    """sampleRegions().getInfo() payload -> one row per feature (properties only)."""
    features = (info or {}).get("features") or []
    return pd.DataFrame([f.get("properties") or {} for f in features])


def unstack_stacked(
    stacked: pd.DataFrame,
    pixel_ids: Sequence[int],
    steps: Sequence[TimeStep],
    variables: Sequence[str],
) -> pd.DataFrame:
    """Wide `{var}_{step}` columns -> one row per pixel per time step.

    Every requested pixel appears for every step; absent bands or pixels are NaN.
    """
    pixel_ids = np.asarray(pixel_ids, dtype="int64")
    if stacked.empty or "pixel_id" not in stacked.columns:
        stacked = pd.DataFrame({"pixel_id": pd.Series(dtype="int64")})
    stacked = (
        stacked.assign(pixel_id=stacked["pixel_id"].astype("int64"))
        .drop_duplicates(subset="pixel_id")
        .set_index("pixel_id")
        .reindex(pixel_ids)
    )

    tcols = time_columns(steps)
    frames = []
    for step in steps:
        part = pd.DataFrame({"pixel_id": pixel_ids})
        for col, val in zip(("year", "month", "day"), step):
            if col in tcols:
                part[col] = val
        for var in variables:
            band = stacked_band_name(var, step)
            if band in stacked.columns:
                part[var] = pd.to_numeric(stacked[band], errors="coerce").to_numpy(dtype="float64")
            else:
                part[var] = np.nan
        frames.append(part)

    if not frames:
        return empty_sample(steps, variables)
    return pd.concat(frames, ignore_index=True)


# -----------------------------------------------------------------------------
# Source
# -----------------------------------------------------------------------------

class EarthEngineSource:
    """RasterSource over an Earth Engine ImageCollection."""

    def __init__(
        self,
        collection: str,
        *,
        temporal_resolution: str = "monthly",
        scale_m: float = 4000,
        batch_size: int = 5000,
        stacked_batch_size: int = 2500,
        tile_scale: int = 1,
        name: Optional[str] = None,
    ):
        self.collection = collection
        self.temporal_resolution = temporal_resolution
        self.scale_m = scale_m
        self._batch_size = int(batch_size)
        self._stacked_batch_size = int(stacked_batch_size)
        self.tile_scale = tile_scale
        self.name = name or collection

    # --- collection helpers ---------------------------------------------------

    def _collection(self, year: Optional[int] = None) -> "ee.ImageCollection":
        ic = ee.ImageCollection(self.collection)
        if year is None or self.temporal_resolution == "monthly_climatology":
            return ic
        return ic.filterDate(f"{int(year)}-01-01", f"{int(year) + 1}-01-01")

    def _step_image(self, ic: "ee.ImageCollection", step: TimeStep) -> "ee.Image":
        if self.temporal_resolution == "annual":
            return ic.mean()
        if self.temporal_resolution == "monthly_climatology":
            return ee.Image(ic.filter(ee.Filter.eq("month", int(step.month))).first())
        if self.temporal_resolution == "daily":
            start = date(step.year, step.month, step.day)
            end = start + timedelta(days=1)
            return ee.Image(ic.filterDate(start.isoformat(), end.isoformat()).first())
        return ee.Image(
            ic.filter(ee.Filter.calendarRange(int(step.month), int(step.month), "month")).first()
        )

    # --- RasterSource ---------------------------------------------------------

    def available_variables(self) -> List[str]:
        try:
            first = ee.Image(self._collection().first())
            return [str(b) for b in first.bandNames().getInfo()]
        except REQUEST_ERRORS as e:
            raise SourceRequestError(f"{self.name}: could not list bands: {e}") from e

    def list_time_steps(self, year: int) -> List[TimeStep]:
        ic = self._collection(year)
        try:
            if self.temporal_resolution == "monthly_climatology":
                months = ic.aggregate_array("month").getInfo()
                return [TimeStep(int(year), int(m)) for m in sorted(set(months))]
            if self.temporal_resolution == "annual":
                return [TimeStep(int(year))] if ic.size().getInfo() > 0 else []
            stamps = ic.aggregate_array("system:time_start").getInfo()
        except REQUEST_ERRORS as e:
            raise SourceRequestError(f"{self.name}: could not list images for {year}: {e}") from e

        dates = sorted(set(pd.to_datetime(stamps, unit="ms", utc=True).date))
        if self.temporal_resolution == "daily":
            return [TimeStep(d.year, d.month, d.day) for d in dates if d.year == year]
        months = sorted({d.month for d in dates if d.year == year})
        return [TimeStep(int(year), m) for m in months]

    def batch_size(self, n_steps: int) -> Optional[int]:
        if n_steps > 1:
            return min(self._batch_size, self._stacked_batch_size)
        return self._batch_size

    def build_stacked_image(self, steps: Sequence[TimeStep], variables: Sequence[str]) -> "ee.Image":
        ic = self._collection(steps[0].year).select(list(variables))
        stacked = None
        for step in steps:
            renamed = self._step_image(ic, step).select(list(variables)).rename(
                [stacked_band_name(v, step) for v in variables]
            )
            stacked = renamed if stacked is None else stacked.addBands(renamed)
        return stacked

    def sample(
        self,
        pixels: pd.DataFrame,
        steps: Sequence[TimeStep],
        variables: Sequence[str],
    ) -> pd.DataFrame:
        if pixels.empty or not steps:
            return empty_sample(steps, variables)

        image = self.build_stacked_image(steps, variables)
        fc = ee.FeatureCollection(pixels_to_geojson(pixels))
        try:
            info = image.sampleRegions(
                collection=fc,
                scale=self.scale_m,
                geometries=False,
                tileScale=self.tile_scale,
            ).getInfo()
        except REQUEST_ERRORS as e:
            raise SourceRequestError(
                f"{self.name}: sampleRegions failed for {len(pixels)} pixels "
                f"x {len(steps)} steps: {e}"
            ) from e

        return unstack_stacked(parse_sample_response(info), pixels["pixel_id"], steps, variables)
