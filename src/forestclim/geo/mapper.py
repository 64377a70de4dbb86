#!/usr/bin/env python3
"""mapper.py

Map one vector geometry onto a ReferenceGrid.

- Polygons: every cell with a non-zero intersection, with
  coverage_fraction = area(polygon ∩ cell) / area(cell).
- Points: the single containing cell, found by index arithmetic,
  coverage_fraction = 1.0.

Geometries are repaired before intersection. If repair fails the mapper
raises GeometryRepairError; callers decide how to count/log it.

The geometry must already be in the grid's CRS.
"""

from __future__ import annotations

from typing import List, NamedTuple, Optional

import numpy as np
import shapely
from shapely.errors import GEOSException
from shapely.geometry.base import BaseGeometry

from forestclim.geo.grid import ReferenceGrid


POLYGON_TYPES = ("Polygon", "MultiPolygon")
POINT_TYPES = ("Point", "MultiPoint")


class GeometryRepairError(ValueError):
    """An invalid geometry could not be made valid."""


class PixelHit(NamedTuple):
    pixel_id: int
    x: float
    y: float
    coverage_fraction: float


def repair_geometry(geom: Optional[BaseGeometry]) -> BaseGeometry:
    """Return a valid version of geom.

    Tries shapely.make_valid first, then the buffer(0) trick.
    Raises GeometryRepairError if neither yields a valid, non-empty geometry.
    """
    if geom is None or geom.is_empty:
        raise GeometryRepairError("geometry is missing or empty")
    if geom.is_valid:
        return geom

    for fix in (shapely.make_valid, lambda g: g.buffer(0)):
        try:
            fixed = fix(geom)
        except GEOSException:
            continue
        if fixed is not None and not fixed.is_empty and fixed.is_valid:
            return fixed

    raise GeometryRepairError(f"could not repair {geom.geom_type}: {shapely.is_valid_reason(geom)}")


def _polygonal_part(geom: BaseGeometry) -> Optional[BaseGeometry]:
    """Drop non-areal pieces that make_valid can leave in a GeometryCollection."""
    if geom.geom_type in POLYGON_TYPES:
        return geom
    parts = [p for p in shapely.get_parts(geom) if p.geom_type in POLYGON_TYPES]
    if not parts:
        return None
    return shapely.union_all(parts)


def map_points(geom: BaseGeometry, grid: ReferenceGrid) -> List[PixelHit]:
    coords = shapely.get_coordinates(geom)
    if len(coords) == 0:
        return []
    rows, cols = grid.rowcol(coords[:, 0], coords[:, 1])
    keep = grid.inside(rows, cols)
    rows, cols = rows[keep], cols[keep]

    hits: List[PixelHit] = []
    seen = set()
    xs, ys = grid.cell_center(rows, cols)
    for pid, x, y in zip(grid.pixel_id(rows, cols).tolist(), xs.tolist(), ys.tolist()):
        # MultiPoint members in the same cell collapse to one entry
        if pid in seen:
            continue
        seen.add(pid)
        hits.append(PixelHit(int(pid), float(x), float(y), 1.0))
    return hits


def map_polygon(geom: BaseGeometry, grid: ReferenceGrid) -> List[PixelHit]:
    window = grid.window_for_bounds(geom.bounds)
    if window is None:
        return []
    row0, row1, col0, col1 = window

    rows, cols = np.meshgrid(
        np.arange(row0, row1 + 1, dtype="int64"),
        np.arange(col0, col1 + 1, dtype="int64"),
        indexing="ij",
    )
    rows, cols = rows.ravel(), cols.ravel()
    xmin, ymin, xmax, ymax = grid.cell_edges(rows, cols)
    cells = shapely.box(xmin, ymin, xmax, ymax)

    shapely.prepare(geom)
    touching = shapely.intersects(geom, cells)
    if not touching.any():
        return []
    rows, cols, cells = rows[touching], cols[touching], cells[touching]

    areas = shapely.area(shapely.intersection(cells, geom))
    frac = np.minimum(areas / grid.cell_area, 1.0)
    # Cells that only share an edge or vertex have zero area
    keep = frac > 0
    rows, cols, frac = rows[keep], cols[keep], frac[keep]

    xs, ys = grid.cell_center(rows, cols)
    pids = grid.pixel_id(rows, cols)
    return [
        PixelHit(int(p), float(x), float(y), float(f))
        for p, x, y, f in zip(pids.tolist(), xs.tolist(), ys.tolist(), frac.tolist())
    ]


def map_geometry(geom: Optional[BaseGeometry], grid: ReferenceGrid) -> List[PixelHit]:
    """Pixel hits for one geometry. Empty list if it lies outside the grid."""
    geom = repair_geometry(geom)

    if geom.geom_type in POINT_TYPES:
        return map_points(geom, grid)

    polygonal = _polygonal_part(geom)
    if polygonal is None:
        return []
    return map_polygon(polygonal, grid)
