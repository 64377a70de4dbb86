#!/usr/bin/env python3
"""forestclim.config

Shared configuration utilities for forestclim CLI subsystems.

This module provides common helpers used across forestclim.geo,
forestclim.extract and forestclim.summarize:
- strict YAML loading
- bounding box helpers (coverage extents)
- the climate source catalog and its resolution into a SourceSpec
- observation layer definitions

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- sources.yaml overrides the built-in catalog key by key.
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml


BBox = Tuple[float, float, float, float]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def load_optional_yaml(path: Path) -> Dict[str, Any]:
    """Like load_yaml, but a missing file yields an empty mapping."""
    if not path.exists():
        return {}
    return load_yaml(path)


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------

def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


# -----------------------------------------------------------------------------
# Climate source catalog
# -----------------------------------------------------------------------------
# Defaults for the four supported sources. Anything here can be overridden
# per key in sources.yaml under `sources: <id>:`.

CONUS_BBOX: BBox = (-125.0, 24.0, -66.0, 50.0)

TEMPORAL_RESOLUTIONS = ("monthly", "monthly_climatology", "daily", "annual")

SOURCE_CATALOG: Dict[str, Dict[str, Any]] = {
    "terraclimate": {
        "kind": "earthengine",
        "collection": "IDAHO_EPSCOR/TERRACLIMATE",
        "temporal_resolution": "monthly",
        "nominal_scale_m": 4638,
        "coverage": "global",
        "variables": {
            "aet": {"scale": 0.1},
            "def": {"scale": 0.1},
            "pdsi": {"scale": 0.01},
            "pet": {"scale": 0.1},
            "pr": {},
            "ro": {},
            "soil": {"scale": 0.1},
            "srad": {"scale": 0.1},
            "swe": {},
            "tmmn": {"scale": 0.1},
            "tmmx": {"scale": 0.1},
            "vap": {"scale": 0.001},
            "vpd": {"scale": 0.01},
            "vs": {"scale": 0.01},
        },
        "suggested_variables": ["pr", "tmmn", "tmmx", "vpd", "srad", "vs", "soil", "pdsi"],
    },
    "prism": {
        "kind": "earthengine",
        "collection": "OREGONSTATE/PRISM/AN81m",
        "temporal_resolution": "monthly",
        "nominal_scale_m": 800,
        "coverage": "conus",
        "exclude_regions": ["10"],
        "variables": {
            "ppt": {},
            "tmean": {},
            "tmin": {},
            "tmax": {},
            "tdmean": {},
            "vpdmin": {},
            "vpdmax": {},
        },
        "suggested_variables": ["ppt", "tmean", "tmin", "tmax", "vpdmax"],
    },
    "worldclim": {
        "kind": "local",
        "temporal_resolution": "monthly",
        "nominal_scale_m": 927,
        "coverage": "global",
        "file_template": "{raw_dir}/{var}/wc2.1_2.5m_{var}_{decade_start}-{decade_end}.tif",
        "decades": ["1990-1999", "2000-2009", "2010-2019", "2020-2021"],
        "variables": {"prec": {}, "tavg": {}, "tmin": {}, "tmax": {}},
        "suggested_variables": ["prec", "tavg", "tmin", "tmax"],
    },
    "era5": {
        "kind": "local",
        "temporal_resolution": "daily",
        "nominal_scale_m": 27830,
        "coverage": "global",
        "file_template": "{raw_dir}/{var}/{var}_{year}.nc",
        "variables": {
            "mean_2m_air_temperature": {"offset": -273.15},
            "minimum_2m_air_temperature": {"offset": -273.15},
            "maximum_2m_air_temperature": {"offset": -273.15},
            "total_precipitation": {"scale": 1000.0},
            "surface_solar_radiation_downwards": {},
            "snow_depth": {},
        },
        "suggested_variables": [
            "mean_2m_air_temperature",
            "minimum_2m_air_temperature",
            "maximum_2m_air_temperature",
            "total_precipitation",
        ],
    },
}


@dataclass(frozen=True)
class VariableSpec:
    """Per-variable unit handling: physical = raw * scale + offset."""

    name: str
    scale: float = 1.0
    offset: float = 0.0


@dataclass(frozen=True)
class SourceSpec:
    source: str
    kind: str
    temporal_resolution: str
    variables: Tuple[VariableSpec, ...]
    nominal_scale_m: float
    coverage: str = "global"
    collection: Optional[str] = None
    coverage_bbox: Optional[BBox] = None
    exclude_regions: Tuple[str, ...] = ()
    batch_size: int = 5000
    stacked_batch_size: int = 2500
    output_dir: Path = Path("data/processed/climate")
    output_prefix: str = ""
    reference_raster: Optional[Path] = None
    grid: Dict[str, Any] = field(default_factory=dict)
    raw_dir: Optional[Path] = None
    file_template: Optional[str] = None
    decades: Tuple[str, ...] = ()
    start_year: Optional[int] = None
    end_year: Optional[int] = None

    @property
    def variable_names(self) -> List[str]:
        return [v.name for v in self.variables]

    @property
    def conus_only(self) -> bool:
        return self.coverage == "conus"

    @property
    def pixel_map_dir(self) -> Path:
        return self.output_dir / "pixel_maps"

    @property
    def pixel_values_dir(self) -> Path:
        return self.output_dir / "pixel_values"

    def years(self, start: Optional[int] = None, end: Optional[int] = None) -> List[int]:
        """Inclusive year range; explicit start/end override the configured ones."""
        start = start if start is not None else self.start_year
        end = end if end is not None else self.end_year
        if start is None or end is None:
            raise SystemExit(f"{self.source}: pass --start-year/--end-year or set them in sources.yaml")
        if start > end:
            raise SystemExit(f"start year ({start}) must be <= end year ({end})")
        return list(range(int(start), int(end) + 1))


def _variable_specs(block: Dict[str, Any], names: Iterable[str]) -> Tuple[VariableSpec, ...]:
    declared = block.get("variables") or {}
    out = []
    for name in names:
        cfg = declared.get(name) or {}
        if not isinstance(cfg, dict):
            raise SystemExit(f"Variable block for '{name}' must be a mapping")
        out.append(
            VariableSpec(
                name=str(name),
                scale=float(cfg.get("scale", 1.0)),
                offset=float(cfg.get("offset", 0.0)),
            )
        )
    return tuple(out)


def resolve_source(
    source_id: str,
    sources_yaml: Optional[Dict[str, Any]] = None,
    *,
    variable_mode: Optional[str] = None,
    custom_variables: Optional[List[str]] = None,
) -> SourceSpec:
    """Merge catalog defaults with sources.yaml and pick the variable set.

    variable_mode:
      - "suggested": the catalog's starter set
      - "all": every declared variable
      - "custom": exactly `custom_variables`
    """
    user_sources = (sources_yaml or {}).get("sources") or {}
    if not isinstance(user_sources, dict):
        raise SystemExit("sources.yaml must contain top-level 'sources:' mapping")

    if source_id not in SOURCE_CATALOG and source_id not in user_sources:
        known = sorted(set(SOURCE_CATALOG) | set(user_sources))
        raise SystemExit(f"Unknown source '{source_id}'. Options: {', '.join(known)}")

    block: Dict[str, Any] = dict(SOURCE_CATALOG.get(source_id, {}))
    override = user_sources.get(source_id) or {}
    if not isinstance(override, dict):
        raise SystemExit(f"sources.yaml: block for '{source_id}' must be a mapping")
    block.update(override)

    resolution = block.get("temporal_resolution", "monthly")
    if resolution not in TEMPORAL_RESOLUTIONS:
        raise SystemExit(
            f"{source_id}: temporal_resolution must be one of {TEMPORAL_RESOLUTIONS}, got {resolution!r}"
        )

    mode = variable_mode or block.get("variable_mode", "all")
    declared = list((block.get("variables") or {}).keys())
    if mode == "suggested":
        names = list(block.get("suggested_variables") or declared)
    elif mode == "all":
        names = declared
    elif mode == "custom":
        names = list(custom_variables or block.get("custom_variables") or [])
        if not names:
            raise SystemExit("custom variables must be provided when variable_mode='custom'")
    else:
        raise SystemExit(f"Unknown variable_mode: {mode}")
    if not names:
        raise SystemExit(f"{source_id}: no variables configured")

    coverage = str(block.get("coverage", "global")).lower()
    coverage_bbox = coerce_bbox(block.get("coverage_bbox"))
    if coverage == "conus" and coverage_bbox is None:
        coverage_bbox = CONUS_BBOX

    output_dir = Path(block.get("output_dir", f"data/processed/climate/{source_id}"))
    raw_dir = block.get("raw_dir")
    ref = block.get("reference_raster")

    return SourceSpec(
        source=source_id,
        kind=str(block.get("kind", "earthengine")),
        temporal_resolution=resolution,
        variables=_variable_specs(block, names),
        nominal_scale_m=float(block.get("nominal_scale_m", 4000)),
        coverage=coverage,
        collection=block.get("collection"),
        coverage_bbox=coverage_bbox,
        exclude_regions=tuple(str(r) for r in block.get("exclude_regions") or ()),
        batch_size=int(block.get("batch_size", 5000)),
        stacked_batch_size=int(block.get("stacked_batch_size", 2500)),
        output_dir=output_dir,
        output_prefix=str(block.get("output_prefix") or source_id),
        reference_raster=Path(ref) if ref else None,
        grid=dict(block.get("grid") or {}),
        raw_dir=Path(raw_dir) if raw_dir else None,
        file_template=block.get("file_template"),
        decades=tuple(str(d) for d in block.get("decades") or ()),
        start_year=block.get("start_year"),
        end_year=block.get("end_year"),
    )


# -----------------------------------------------------------------------------
# Observation layers
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class LayerSpec:
    """How to read one observation layer of the cleaned vector dataset.

    `geometry_id_col` is set for layers where several observations share one
    physical geometry; the mapper then runs once per geometry id.
    """

    name: str
    observation_id_col: str
    geometry_id_col: Optional[str] = None
    region_col: str = "REGION_ID"
    year_col: str = "SURVEY_YEAR"


DEFAULT_LAYERS: Dict[str, Dict[str, Any]] = {
    "damage_areas": {"observation_id": "OBSERVATION_ID", "geometry_id": "DAMAGE_AREA_ID"},
    "damage_points": {"observation_id": "OBSERVATION_ID"},
    "surveyed_areas": {"observation_id": "SURVEY_FEATURE_ID"},
}


def load_layer_specs(ids_yaml: Optional[Dict[str, Any]] = None) -> List[LayerSpec]:
    """Return layer definitions from ids.yaml (`layers:` mapping) or defaults."""
    layers = (ids_yaml or {}).get("layers") or DEFAULT_LAYERS
    if not isinstance(layers, dict):
        raise SystemExit("ids.yaml 'layers:' must be a mapping of layer name -> settings")
    specs = []
    for name, cfg in layers.items():
        cfg = cfg or {}
        if "observation_id" not in cfg:
            raise SystemExit(f"Layer '{name}' is missing 'observation_id'")
        specs.append(
            LayerSpec(
                name=str(name),
                observation_id_col=str(cfg["observation_id"]),
                geometry_id_col=cfg.get("geometry_id"),
                region_col=str(cfg.get("region_col", "REGION_ID")),
                year_col=str(cfg.get("year_col", "SURVEY_YEAR")),
            )
        )
    return specs


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_IDS_YAML = Path("config/ids.yaml")
DEFAULT_IDS_GPKG = Path("data/processed/ids/ids_layers_cleaned.gpkg")
