#!/usr/bin/env python3
"""tables.py

Parquet helpers shared by every stage.

Outputs are written to a temporary sibling and renamed into place, so an
interrupted run leaves either a complete file or no file. The presence of a
file is what the resumable stages treat as "done".
"""

from __future__ import annotations

import os
from pathlib import Path

import pandas as pd


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def write_parquet_atomic(df: pd.DataFrame, path: Path) -> Path:
    path = Path(path)
    _ensure_dir(path.parent)
    tmp = path.with_name(f".{path.name}.partial")
    try:
        df.to_parquet(tmp, index=False)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
    return path


def read_parquet(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise SystemExit(f"Table not found: {path}")
    return pd.read_parquet(path)
