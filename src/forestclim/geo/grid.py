#!/usr/bin/env python3
"""grid.py

Reference grid for one climate source: the pixel universe geometries are
mapped onto.

A grid is fully described by a north-up affine transform, its size and a CRS.
Pixel ids are row-major cell indices (row * width + col, 0-based), so they are
stable for the life of a grid and meaningless across grids.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import numpy as np
import rasterio
from affine import Affine
from rasterio.transform import from_origin

from forestclim.config import BBox, coerce_bbox


@dataclass(frozen=True)
class ReferenceGrid:
    transform: Affine
    width: int
    height: int
    crs: Any

    def __post_init__(self) -> None:
        t = self.transform
        if t.b != 0 or t.d != 0:
            raise ValueError("Rotated grids are not supported (transform must be north-up)")
        if t.a <= 0 or t.e >= 0:
            raise ValueError("Grid transform must have positive x and negative y resolution")
        if self.width <= 0 or self.height <= 0:
            raise ValueError("Grid must have positive width and height")

    # --- construction ---------------------------------------------------------

    @classmethod
    def from_raster(cls, path: Path) -> "ReferenceGrid":
        """Use the first band's grid of an existing raster."""
        if not Path(path).exists():
            raise SystemExit(f"Reference raster not found: {path}")
        with rasterio.open(path) as src:
            if src.crs is None:
                raise SystemExit(f"Reference raster has no CRS: {path}")
            return cls(transform=src.transform, width=src.width, height=src.height, crs=src.crs)

    @classmethod
    def from_bounds(cls, bounds: BBox, resolution: float, crs: Any = "EPSG:4326") -> "ReferenceGrid":
        """Grid covering `bounds` at square `resolution`, anchored at (xmin, ymax)."""
        xmin, ymin, xmax, ymax = bounds
        width = int(math.ceil(round((xmax - xmin) / resolution, 9)))
        height = int(math.ceil(round((ymax - ymin) / resolution, 9)))
        return cls(transform=from_origin(xmin, ymax, resolution, resolution), width=width, height=height, crs=crs)

    @classmethod
    def from_config(cls, reference_raster: Optional[Path], grid: Dict[str, Any]) -> "ReferenceGrid":
        """Resolve a grid from a source config: a raster path wins over `grid:`."""
        if reference_raster is not None:
            return cls.from_raster(reference_raster)
        bounds = coerce_bbox(grid.get("bounds"))
        resolution = grid.get("resolution")
        if bounds is None or resolution is None:
            raise SystemExit(
                "Source needs either 'reference_raster' or 'grid: {bounds: [...], resolution: ...}'"
            )
        return cls.from_bounds(bounds, float(resolution), grid.get("crs", "EPSG:4326"))

    # --- geometry of the grid -------------------------------------------------

    @property
    def res_x(self) -> float:
        return self.transform.a

    @property
    def res_y(self) -> float:
        return -self.transform.e

    @property
    def cell_area(self) -> float:
        return self.res_x * self.res_y

    @property
    def bounds(self) -> BBox:
        x0, y0 = self.transform.c, self.transform.f
        return (x0, y0 - self.height * self.res_y, x0 + self.width * self.res_x, y0)

    def rowcol(self, x, y) -> Tuple[np.ndarray, np.ndarray]:
        """Row/col of the cell containing each (x, y); may fall outside the grid."""
        x = np.asarray(x, dtype="float64")
        y = np.asarray(y, dtype="float64")
        col = np.floor((x - self.transform.c) / self.res_x).astype("int64")
        row = np.floor((self.transform.f - y) / self.res_y).astype("int64")
        return row, col

    def inside(self, row, col) -> np.ndarray:
        row = np.asarray(row)
        col = np.asarray(col)
        return (row >= 0) & (row < self.height) & (col >= 0) & (col < self.width)

    def pixel_id(self, row, col) -> np.ndarray:
        return np.asarray(row, dtype="int64") * self.width + np.asarray(col, dtype="int64")

    def rowcol_from_id(self, pixel_id) -> Tuple[np.ndarray, np.ndarray]:
        pixel_id = np.asarray(pixel_id, dtype="int64")
        return pixel_id // self.width, pixel_id % self.width

    def cell_center(self, row, col) -> Tuple[np.ndarray, np.ndarray]:
        row = np.asarray(row, dtype="float64")
        col = np.asarray(col, dtype="float64")
        x = self.transform.c + (col + 0.5) * self.res_x
        y = self.transform.f - (row + 0.5) * self.res_y
        return x, y

    def cell_edges(self, row, col) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """(xmin, ymin, xmax, ymax) arrays for the given cells."""
        row = np.asarray(row, dtype="float64")
        col = np.asarray(col, dtype="float64")
        xmin = self.transform.c + col * self.res_x
        ymax = self.transform.f - row * self.res_y
        return xmin, ymax - self.res_y, xmin + self.res_x, ymax

    def window_for_bounds(self, bounds: BBox) -> Optional[Tuple[int, int, int, int]]:
        """Inclusive (row0, row1, col0, col1) of cells touching bounds, clipped.

        Returns None if the bounds do not touch the grid at all.
        """
        xmin, ymin, xmax, ymax = bounds
        col0 = int(math.floor((xmin - self.transform.c) / self.res_x))
        col1 = int(math.floor((xmax - self.transform.c) / self.res_x))
        row0 = int(math.floor((self.transform.f - ymax) / self.res_y))
        row1 = int(math.floor((self.transform.f - ymin) / self.res_y))
        col0, row0 = max(col0, 0), max(row0, 0)
        col1, row1 = min(col1, self.width - 1), min(row1, self.height - 1)
        if col0 > col1 or row0 > row1:
            return None
        return row0, row1, col0, col1

    def describe(self) -> str:
        return (
            f"{self.width} x {self.height} cells, "
            f"res {self.res_x:.6f} x {self.res_y:.6f}, crs {self.crs}"
        )
