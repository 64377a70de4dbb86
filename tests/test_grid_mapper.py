#!/usr/bin/env python3

from __future__ import annotations

import pytest
from shapely.geometry import MultiPoint, Point, Polygon, box

from forestclim.geo.grid import ReferenceGrid
from forestclim.geo.mapper import GeometryRepairError, map_geometry, repair_geometry


def _grid():
    # 4 x 4 unit cells covering (0, 0)-(4, 4)
    return ReferenceGrid.from_bounds((0.0, 0.0, 4.0, 4.0), 1.0)


def test_grid_from_bounds():
    g = _grid()
    assert (g.width, g.height) == (4, 4)
    assert g.cell_area == pytest.approx(1.0)
    assert g.bounds == pytest.approx((0.0, 0.0, 4.0, 4.0))


def test_pixel_ids_are_row_major():
    g = _grid()
    assert int(g.pixel_id(0, 0)) == 0
    assert int(g.pixel_id(1, 2)) == 6
    row, col = g.rowcol_from_id(15)
    assert (int(row), int(col)) == (3, 3)


def test_window_for_bounds_outside_is_none():
    assert _grid().window_for_bounds((10.0, 10.0, 11.0, 11.0)) is None


def test_polygon_straddling_four_cells():
    hits = map_geometry(box(0.5, 0.5, 1.5, 1.5), _grid())
    assert len(hits) == 4
    assert all(h.coverage_fraction == pytest.approx(0.25) for h in hits)
    assert sum(h.coverage_fraction for h in hits) == pytest.approx(1.0)


def test_polygon_never_emits_edge_only_cells():
    # Exactly the bottom-left cell; neighbours only share an edge
    hits = map_geometry(box(0.0, 0.0, 1.0, 1.0), _grid())
    assert len(hits) == 1
    assert hits[0].pixel_id == 12
    assert hits[0].coverage_fraction == pytest.approx(1.0)
    assert (hits[0].x, hits[0].y) == pytest.approx((0.5, 0.5))


def test_all_coverage_fractions_positive():
    hits = map_geometry(Polygon([(0.2, 0.2), (3.7, 0.4), (2.1, 3.9)]), _grid())
    assert hits
    assert all(0 < h.coverage_fraction <= 1 for h in hits)


def test_point_maps_to_single_cell():
    hits = map_geometry(Point(2.5, 3.5), _grid())
    assert len(hits) == 1
    assert hits[0].pixel_id == 2
    assert hits[0].coverage_fraction == 1.0


def test_multipoint_in_same_cell_collapses():
    hits = map_geometry(MultiPoint([(0.1, 0.1), (0.9, 0.9), (3.5, 3.5)]), _grid())
    assert sorted(h.pixel_id for h in hits) == [3, 12]


def test_outside_grid_is_empty():
    g = _grid()
    assert map_geometry(box(10, 10, 11, 11), g) == []
    assert map_geometry(Point(-5, -5), g) == []


def test_self_intersecting_polygon_is_repaired():
    bowtie = Polygon([(0, 0), (2, 2), (2, 0), (0, 2)])
    assert not bowtie.is_valid
    fixed = repair_geometry(bowtie)
    assert fixed.is_valid
    hits = map_geometry(bowtie, _grid())
    assert hits
    assert sum(h.coverage_fraction for h in hits) == pytest.approx(fixed.area)


def test_empty_geometry_raises():
    with pytest.raises(GeometryRepairError):
        map_geometry(Polygon(), _grid())
    with pytest.raises(GeometryRepairError):
        repair_geometry(None)
