"""Immutable point records consumed by both analyzers.

A :class:`PointDataset` is built once from raw records (mappings holding
coordinates, a time value and arbitrary attributes). The ordinal ``int_time``
of every record is assigned while the temporal index is built and never
changes afterwards.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Iterator, List, Mapping, Sequence

import numpy as np
import pandas as pd

from pysda.errors import InvalidInputError
from pysda.temporal import TemporalIndex


@dataclass(frozen=True)
class PointRecord:
    """A single geocoded, timestamped case."""

    id: int
    x: float
    y: float
    raw_time: Any
    int_time: int
    properties: Mapping[str, Any] = field(default_factory=dict, compare=False)

    @property
    def coords(self) -> tuple[float, float]:
        return self.x, self.y


def _coerce_coordinate(record: Mapping[str, Any], key: str, pos: int) -> float:
    if key not in record:
        raise InvalidInputError(f"Record {pos} is missing coordinate field {key!r}")
    try:
        value = float(record[key])
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"Record {pos} has a non-numeric {key!r}: {record[key]!r}") from exc
    if not math.isfinite(value):
        raise InvalidInputError(f"Record {pos} has a non-finite {key!r}")
    return value


def _frozen_array(values: Sequence[float], dtype) -> np.ndarray:
    arr = np.asarray(values, dtype=dtype)
    arr.setflags(write=False)
    return arr


class PointDataset:
    """Normalized, read-only collection of :class:`PointRecord` instances."""

    def __init__(self, records: Sequence[PointRecord], temporal_index: TemporalIndex, time_field: str) -> None:
        self._records: tuple[PointRecord, ...] = tuple(records)
        self.temporal_index = temporal_index
        self.time_field = time_field
        self.x = _frozen_array([r.x for r in self._records], float)
        self.y = _frozen_array([r.y for r in self._records], float)
        self.int_time = _frozen_array([r.int_time for r in self._records], int)

    @classmethod
    def from_records(
        cls,
        records: Iterable[Mapping[str, Any]],
        time_field: str,
        unit: str = "day",
        x_field: str = "x",
        y_field: str = "y",
        logger: logging.Logger | None = None,
    ) -> "PointDataset":
        """
        Validate raw records and build the dataset.

        Coordinates and time values are checked before any analysis runs;
        problems surface as InvalidInputError.
        """

        rows: List[Mapping[str, Any]] = list(records)
        coords = [
            (_coerce_coordinate(row, x_field, pos), _coerce_coordinate(row, y_field, pos))
            for pos, row in enumerate(rows)
        ]
        index = TemporalIndex.build(rows, time_field=time_field, unit=unit, logger=logger)

        points = [
            PointRecord(
                id=pos,
                x=x,
                y=y,
                raw_time=row[time_field],
                int_time=index.int_times[pos],
                properties=MappingProxyType(dict(row)),
            )
            for pos, (row, (x, y)) in enumerate(zip(rows, coords))
        ]
        return cls(points, index, time_field)

    @classmethod
    def from_frame(
        cls,
        df: pd.DataFrame,
        time_field: str,
        unit: str = "day",
        x_field: str = "x",
        y_field: str = "y",
        logger: logging.Logger | None = None,
    ) -> "PointDataset":
        """Build the dataset from a DataFrame with one row per case."""

        return cls.from_records(
            df.to_dict(orient="records"),
            time_field=time_field,
            unit=unit,
            x_field=x_field,
            y_field=y_field,
            logger=logger,
        )

    @property
    def records(self) -> tuple[PointRecord, ...]:
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[PointRecord]:
        return iter(self._records)

    def __getitem__(self, idx: int) -> PointRecord:
        return self._records[idx]

    def coords(self) -> np.ndarray:
        """Return an (n, 2) array of ``(x, y)`` coordinates."""

        return np.column_stack([self.x, self.y]) if len(self) else np.zeros((0, 2), dtype=float)

    def label(self, int_time: int) -> Any:
        return self.temporal_index.to_calendar_label(int_time)

    def to_frame(self) -> pd.DataFrame:
        """Tabular view of the records with their ordinal times and labels."""

        rows = [
            {
                "id": r.id,
                "x": r.x,
                "y": r.y,
                "time": r.raw_time,
                "int_time": r.int_time,
                "time_label": self.label(r.int_time),
            }
            for r in self._records
        ]
        return pd.DataFrame(rows, columns=["id", "x", "y", "time", "int_time", "time_label"])
