"""Input/output helpers for the point-pattern pipeline.

Covers loading case points from CSV or GeoJSON into a PointDataset,
required-column checks, and saving result tables and summaries.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List

import pandas as pd

from pysda.dataset import PointDataset
from pysda.errors import InvalidInputError
from pysda.mstdbscan import TrackerResult
from pysda.tapitas import DiffusionResult

JSON_COLUMNS = ("node_ids", "matched", "shape")


def ensure_required_columns(df: pd.DataFrame, required: Iterable[str]) -> pd.DataFrame:
    """Validate that the DataFrame contains the required columns."""

    missing = [col for col in required if col not in df.columns]
    if missing:
        raise InvalidInputError(f"Missing required columns: {missing}")
    return df


def load_points_csv(
    path: str | Path,
    time_field: str,
    unit: str = "day",
    x_field: str = "x",
    y_field: str = "y",
) -> PointDataset:
    """Load a CSV with one row per case and build the dataset."""

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input CSV not found: {path}")
    logging.info("Reading %s", path)
    # Time values stay raw; the temporal index parses them for the chosen unit.
    df = pd.read_csv(path, dtype={time_field: object}, low_memory=False)
    ensure_required_columns(df, [x_field, y_field, time_field])
    logging.info("Loaded %d rows from %s", len(df), path)
    return PointDataset.from_frame(df, time_field=time_field, unit=unit, x_field=x_field, y_field=y_field)


def geojson_records(geojson: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Flatten a FeatureCollection of Point features into records with x/y."""

    if geojson.get("type") != "FeatureCollection" or not isinstance(geojson.get("features"), list):
        raise InvalidInputError("Expected a GeoJSON FeatureCollection with a features list.")

    records: List[Dict[str, Any]] = []
    for pos, feature in enumerate(geojson["features"]):
        geometry = feature.get("geometry") or {}
        coords = geometry.get("coordinates")
        if geometry.get("type") != "Point" or not isinstance(coords, (list, tuple)) or len(coords) < 2:
            raise InvalidInputError(f"Feature {pos} is not a Point with coordinates.")
        record = dict(feature.get("properties") or {})
        record["x"], record["y"] = coords[0], coords[1]
        records.append(record)
    return records


def load_points_geojson(path: str | Path, time_field: str, unit: str = "day") -> PointDataset:
    """Load a GeoJSON FeatureCollection of case points and build the dataset."""

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input GeoJSON not found: {path}")
    logging.info("Reading %s", path)
    with path.open("r", encoding="utf-8") as fh:
        try:
            geojson = json.load(fh)
        except json.JSONDecodeError as exc:
            raise InvalidInputError(f"Invalid JSON in {path}: {exc}") from exc
    records = geojson_records(geojson)
    logging.info("Loaded %d point features from %s", len(records), path)
    return PointDataset.from_records(records, time_field=time_field, unit=unit)


def load_points(input_cfg: Dict[str, Any]) -> PointDataset:
    """Dispatch on the configured input format (csv or geojson)."""

    path = input_cfg.get("path")
    if not path:
        raise ValueError("input.path is required")
    fmt = str(input_cfg.get("format") or Path(path).suffix.lstrip(".")).lower()
    time_field = str(input_cfg.get("time_field", "OnsetDay"))
    unit = str(input_cfg.get("time_unit", "day"))
    if fmt == "csv":
        return load_points_csv(
            path,
            time_field=time_field,
            unit=unit,
            x_field=str(input_cfg.get("x_field", "x")),
            y_field=str(input_cfg.get("y_field", "y")),
        )
    if fmt in {"geojson", "json"}:
        return load_points_geojson(path, time_field=time_field, unit=unit)
    raise ValueError(f"Unsupported input format: {fmt}")


def save_dataframe(df: pd.DataFrame, path: str | Path) -> None:
    """Persist a DataFrame to CSV, JSON-encoding nested list/dict columns."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    out = df.copy()
    for col in JSON_COLUMNS:
        if col in out.columns:
            out[col] = out[col].map(json.dumps)
    out.to_csv(path, index=False)
    logging.info("Saved %d rows to %s", len(df), path)


def save_summary(summary: Dict[str, Any], path: str | Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary, indent=2, default=str), encoding="utf-8")
    logging.info("Saved summary to %s", path)


def save_diffusion_result(result: DiffusionResult, out_dir: str | Path, prefix: str = "tapitas_") -> List[Path]:
    """Write every diffusion table as CSV plus the summary as JSON."""

    out_dir = Path(out_dir)
    written: List[Path] = []
    for table, frame in result.to_frames().items():
        target = out_dir / f"{prefix}{table}.csv"
        save_dataframe(frame, target)
        written.append(target)
    summary_path = out_dir / f"{prefix}summary.json"
    save_summary(result.summary.to_dict(), summary_path)
    written.append(summary_path)
    return written


def save_tracker_result(result: TrackerResult, out_dir: str | Path, prefix: str = "mst_") -> List[Path]:
    """Write tracker clusters, points (and polygon states) as CSV plus the summary."""

    out_dir = Path(out_dir)
    written: List[Path] = []
    for table, frame in result.to_frames().items():
        target = out_dir / f"{prefix}{table}.csv"
        save_dataframe(frame, target)
        written.append(target)
    summary_path = out_dir / f"{prefix}summary.json"
    save_summary(result.summary(), summary_path)
    written.append(summary_path)
    return written
