#!/usr/bin/env python3
"""pixel_maps.py

Build observation -> pixel association tables ("pixel maps") for one climate
source grid, one parquet per observation layer.

This module exposes:
1. build_pixel_map()        - map every geometry of a GeoDataFrame
2. build_layer_pixel_map()  - same, with pancake deduplication by geometry id
3. build_pixel_maps()       - read layers from the cleaned GeoPackage, filter
                              to source coverage, persist, resume
4. load_pixel_maps() / unique_pixels() - inputs for the extractor

Pixel map schema:
    [observation_id,] geometry_id, pixel_id, x, y, coverage_fraction

Notes:
- "Pancake" observations share one DAMAGE_AREA_ID geometry. Mapping runs on
  unique geometries only and is joined back to every observation.
- Observations outside a source's coverage are removed before mapping, so
  "not covered" is absence from the map, not a null row.
- A layer whose geometries produce no cells at all points to a CRS mismatch
  and raises PixelMapError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import geopandas as gpd
import pandas as pd

from forestclim.config import BBox, LayerSpec
from forestclim.geo.grid import ReferenceGrid
from forestclim.geo.mapper import GeometryRepairError, map_geometry
from forestclim.tables import read_parquet, write_parquet_atomic


PIXEL_COLUMNS = ["pixel_id", "x", "y", "coverage_fraction"]


class PixelMapError(ValueError):
    """Pixel map construction produced an impossible result."""


@dataclass
class MapperStats:
    n_geometries: int = 0
    n_mapped: int = 0
    n_outside: int = 0
    n_repair_failed: int = 0
    repair_failed_ids: List[object] = field(default_factory=list)

    def line(self) -> str:
        return (
            f"{self.n_geometries} geometries: {self.n_mapped} mapped, "
            f"{self.n_outside} outside grid, {self.n_repair_failed} failed repair"
        )


def _empty_map(id_cols: Sequence[str]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            **{c: pd.Series(dtype="object") for c in id_cols},
            "pixel_id": pd.Series(dtype="int64"),
            "x": pd.Series(dtype="float64"),
            "y": pd.Series(dtype="float64"),
            "coverage_fraction": pd.Series(dtype="float64"),
        }
    )


def _to_grid_crs(gdf: gpd.GeoDataFrame, grid: ReferenceGrid) -> gpd.GeoDataFrame:
    if gdf.crs is None:
        raise SystemExit(
            "Observation layer has no CRS. "
            "Fix that first; mapping onto a climate grid depends on it."
        )
    if gdf.crs == grid.crs:
        return gdf
    return gdf.to_crs(grid.crs)


# -----------------------------------------------------------------------------
# Core mapping
# -----------------------------------------------------------------------------

def build_pixel_map(
    gdf: gpd.GeoDataFrame,
    grid: ReferenceGrid,
    id_col: str,
) -> Tuple[pd.DataFrame, MapperStats]:
    """Map every row of gdf onto grid.

    Returns a frame with columns [geometry_id, pixel_id, x, y, coverage_fraction]
    and the per-geometry statistics. Geometries that fail repair contribute
    nothing and are listed in stats.repair_failed_ids.
    """
    stats = MapperStats(n_geometries=len(gdf))
    if gdf.empty:
        return _empty_map(["geometry_id"]), stats

    gdf = _to_grid_crs(gdf, grid)

    ids: List[object] = []
    hits_rows: List[tuple] = []
    for gid, geom in zip(gdf[id_col].tolist(), gdf.geometry.tolist()):
        try:
            hits = map_geometry(geom, grid)
        except GeometryRepairError as e:
            stats.n_repair_failed += 1
            stats.repair_failed_ids.append(gid)
            print(f"[WARN] {id_col}={gid}: {e}; excluded from pixel map")
            continue
        if not hits:
            stats.n_outside += 1
            continue
        stats.n_mapped += 1
        ids.extend([gid] * len(hits))
        hits_rows.extend(hits)

    if not hits_rows:
        return _empty_map(["geometry_id"]), stats

    out = pd.DataFrame(hits_rows, columns=PIXEL_COLUMNS)
    out.insert(0, "geometry_id", ids)
    out["pixel_id"] = out["pixel_id"].astype("int64")
    return out, stats


def build_layer_pixel_map(
    gdf: gpd.GeoDataFrame,
    grid: ReferenceGrid,
    layer: LayerSpec,
) -> Tuple[pd.DataFrame, MapperStats]:
    """Pixel map for one layer, mapping each physical geometry only once.

    If the layer has a geometry id column, unique geometries are mapped and
    the result is expanded back to every observation sharing that id.
    """
    if layer.geometry_id_col is None:
        pm, stats = build_pixel_map(gdf, grid, layer.observation_id_col)
        return pm, stats

    unique_geoms = gdf.drop_duplicates(subset=layer.geometry_id_col, keep="first")
    print(
        f"[PIXELMAP] {len(gdf)} observations, {len(unique_geoms)} unique geometries"
    )
    geom_map, stats = build_pixel_map(
        unique_geoms[[layer.geometry_id_col, unique_geoms.geometry.name]],
        grid,
        layer.geometry_id_col,
    )

    lookup = pd.DataFrame(
        {
            "observation_id": gdf[layer.observation_id_col].to_numpy(),
            "geometry_id": gdf[layer.geometry_id_col].to_numpy(),
        }
    )
    pm = lookup.merge(geom_map, on="geometry_id", how="inner")
    pm = pm[["observation_id", "geometry_id"] + PIXEL_COLUMNS]
    return pm.reset_index(drop=True), stats


# -----------------------------------------------------------------------------
# Coverage filtering
# -----------------------------------------------------------------------------

def filter_to_coverage(
    gdf: gpd.GeoDataFrame,
    *,
    region_col: str = "REGION_ID",
    exclude_regions: Iterable[str] = (),
    coverage_bbox: Optional[BBox] = None,
) -> gpd.GeoDataFrame:
    """Drop observations a source cannot cover (e.g. Alaska for a CONUS grid).

    Regions are compared as normalized strings so 10, "10" and " 10" match.
    coverage_bbox is lon/lat; an observation is kept if its representative
    point falls inside.
    """
    out = gdf
    excluded = {str(r).strip() for r in exclude_regions}
    if excluded and region_col in out.columns:
        out = out[~out[region_col].astype(str).str.strip().isin(excluded)]

    if coverage_bbox is not None and not out.empty:
        xmin, ymin, xmax, ymax = coverage_bbox
        pts = out.geometry.representative_point()
        if out.crs is not None and not out.crs.equals("EPSG:4326"):
            pts = pts.to_crs("EPSG:4326")
        inside = (pts.x >= xmin) & (pts.x <= xmax) & (pts.y >= ymin) & (pts.y <= ymax)
        # Missing/empty geometries pass through so the mapper counts them as repair failures
        broken = out.geometry.isna() | out.geometry.is_empty
        out = out[(inside | broken).to_numpy()]

    return out


# -----------------------------------------------------------------------------
# Layer orchestration (read -> filter -> map -> persist)
# -----------------------------------------------------------------------------

def pixel_map_path(output_dir: Path, layer_name: str) -> Path:
    return Path(output_dir) / f"{layer_name}_pixel_map.parquet"


def build_pixel_maps(
    vector_path: Path,
    grid: ReferenceGrid,
    output_dir: Path,
    layers: Sequence[LayerSpec],
    *,
    exclude_regions: Iterable[str] = (),
    coverage_bbox: Optional[BBox] = None,
    overwrite: bool = False,
    dry_run: bool = False,
) -> Dict[str, pd.DataFrame]:
    """Build (or load) one pixel map per observation layer.

    Existing outputs are loaded instead of recomputed unless overwrite=True.

    Raises:
        PixelMapError: a layer had geometries to map but none hit the grid.
    """
    vector_path = Path(vector_path)
    if not vector_path.exists():
        raise SystemExit(f"Observation dataset not found: {vector_path}")

    exclude_regions = list(exclude_regions)
    results: Dict[str, pd.DataFrame] = {}
    for layer in layers:
        out_path = pixel_map_path(output_dir, layer.name)
        print(f"[PIXELMAP] {layer.name}")

        if out_path.exists() and not overwrite:
            print(f"[SKIP] {out_path.name} exists; loading")
            results[layer.name] = read_parquet(out_path)
            continue

        if dry_run:
            print(f"  - would write: {out_path}")
            continue

        gdf = gpd.read_file(vector_path, layer=layer.name)
        n_read = len(gdf)
        gdf = filter_to_coverage(
            gdf,
            region_col=layer.region_col,
            exclude_regions=exclude_regions,
            coverage_bbox=coverage_bbox,
        )
        if len(gdf) < n_read:
            print(f"  - {n_read - len(gdf)} of {n_read} features outside source coverage")

        if gdf.empty:
            print(f"  - no coverage for {layer.name}; writing empty pixel map")
            id_cols = ["observation_id", "geometry_id"] if layer.geometry_id_col else ["geometry_id"]
            pm = _empty_map(id_cols)
        else:
            pm, stats = build_layer_pixel_map(gdf, grid, layer)
            print(f"  - {stats.line()}")
            if pm.empty and stats.n_geometries > stats.n_repair_failed:
                raise PixelMapError(
                    f"No grid cells found for any geometry in layer '{layer.name}'. "
                    f"Check that the layer CRS ({gdf.crs}) and grid CRS ({grid.crs}) agree."
                )

        write_parquet_atomic(pm, out_path)
        print(f"  - saved {len(pm)} pixel mappings -> {out_path.name}")
        results[layer.name] = pm

    return results


# -----------------------------------------------------------------------------
# Readers for downstream stages
# -----------------------------------------------------------------------------

def load_pixel_maps(pixel_map_dir: Path) -> Dict[str, pd.DataFrame]:
    """Load every *_pixel_map.parquet in a directory, keyed by layer name."""
    pixel_map_dir = Path(pixel_map_dir)
    files = sorted(pixel_map_dir.glob("*_pixel_map.parquet"))
    if not files:
        raise SystemExit(f"No pixel map files found in {pixel_map_dir}")
    return {f.name[: -len("_pixel_map.parquet")]: pd.read_parquet(f) for f in files}


def unique_pixels(pixel_maps: Iterable[pd.DataFrame]) -> pd.DataFrame:
    """Union of (pixel_id, x, y) across pixel maps, sorted by pixel_id."""
    frames = [pm[["pixel_id", "x", "y"]] for pm in pixel_maps if not pm.empty]
    if not frames:
        return pd.DataFrame({"pixel_id": pd.Series(dtype="int64"),
                             "x": pd.Series(dtype="float64"),
                             "y": pd.Series(dtype="float64")})
    out = pd.concat(frames, ignore_index=True).drop_duplicates(subset="pixel_id")
    return out.sort_values("pixel_id").reset_index(drop=True)
