"""Ordinal time axis for timestamped point records.

Raw time values are mapped onto a dense integer axis so both analyzers can
reason in "ticks" of the chosen unit. For the ``int`` unit the axis is the
sorted set of distinct raw values; for calendar units it is a dense range of
buckets from the earliest to the latest value.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

from pysda.errors import InvalidInputError

TIME_UNITS: Tuple[str, ...] = ("int", "hour", "day", "week", "month", "year")

_DATE_STEPS: Dict[str, pd.DateOffset] = {
    "hour": pd.DateOffset(hours=1),
    "day": pd.DateOffset(days=1),
    "week": pd.DateOffset(weeks=1),
    "month": pd.DateOffset(months=1),
    "year": pd.DateOffset(years=1),
}

_LABEL_FORMATS: Dict[str, str] = {
    "hour": "%Y/%m/%d %H:00",
    "day": "%Y/%m/%d",
    "week": "%Y/%m/%d",
    "month": "%Y/%m/%d",
    "year": "%Y/%m/%d",
}


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return value is pd.NaT


def _extract_times(records: Sequence[Mapping[str, Any]], time_field: str) -> List[Any]:
    values: List[Any] = []
    for pos, record in enumerate(records):
        if time_field not in record:
            raise InvalidInputError(f"Record {pos} is missing time field {time_field!r}")
        value = record[time_field]
        if _is_missing(value):
            raise InvalidInputError(f"Record {pos} has an empty time field {time_field!r}")
        values.append(value)
    return values


def _truncate(ts: pd.Timestamp, unit: str) -> pd.Timestamp:
    if unit == "hour":
        return ts.floor("h")
    return ts.normalize()


@dataclass(frozen=True)
class TemporalIndex:
    """Bidirectional mapping between raw time values and ordinal ticks."""

    unit: str
    buckets: Tuple[Any, ...]
    int_times: Tuple[int, ...]
    unmatched_count: int = 0

    @classmethod
    def build(
        cls,
        records: Sequence[Mapping[str, Any]],
        time_field: str,
        unit: str = "day",
        logger: logging.Logger | None = None,
    ) -> "TemporalIndex":
        """
        Build the index for the records' ``time_field`` values.

        Raises InvalidInputError when a record lacks the field or a value cannot
        be parsed for the requested unit.
        """

        unit = str(unit).lower()
        if unit not in TIME_UNITS:
            raise ValueError(f"Unsupported time unit: {unit}")
        log = logger or logging.getLogger(cls.__name__)
        raw = _extract_times(records, time_field)

        if unit == "int":
            try:
                numeric = pd.to_numeric(pd.Series(raw, dtype=object), errors="raise")
            except (ValueError, TypeError) as exc:
                raise InvalidInputError(f"Time field {time_field!r} holds non-numeric values: {exc}") from exc
            buckets = tuple(np.unique(numeric.to_numpy()).tolist())
            lookup = {value: pos for pos, value in enumerate(buckets)}
            int_times = tuple(lookup[value] for value in numeric.tolist())
            return cls(unit=unit, buckets=buckets, int_times=int_times)

        try:
            parsed = pd.to_datetime(pd.Series(raw, dtype=object), errors="raise", format="mixed")
        except (ValueError, TypeError, OverflowError) as exc:
            raise InvalidInputError(f"Time field {time_field!r} holds unparseable dates: {exc}") from exc

        if parsed.empty:
            return cls(unit=unit, buckets=(), int_times=())

        step = _DATE_STEPS[unit]
        truncated = [_truncate(ts, unit) for ts in parsed]
        start = min(truncated)
        stop = max(truncated) + step
        buckets = tuple(pd.date_range(start=start, end=stop, freq=step, inclusive="left"))
        lookup = {ts: pos for pos, ts in enumerate(buckets)}

        int_times: List[int] = []
        unmatched = 0
        for ts in truncated:
            pos = lookup.get(ts)
            if pos is None:
                # Values falling between strided buckets are pinned to offset 0.
                unmatched += 1
                pos = 0
            int_times.append(pos)

        if unmatched:
            log.warning(
                "%d of %d time values did not match a %s bucket and were assigned offset 0",
                unmatched,
                len(int_times),
                unit,
            )
        return cls(unit=unit, buckets=buckets, int_times=tuple(int_times), unmatched_count=unmatched)

    def __len__(self) -> int:
        return len(self.buckets)

    def to_int_time(self, raw: Any) -> int:
        """Map a raw time value to its tick; unknown values map to offset 0."""

        if self.unit == "int":
            try:
                value = pd.to_numeric(pd.Series([raw], dtype=object), errors="raise").iloc[0]
            except (ValueError, TypeError) as exc:
                raise InvalidInputError(f"Non-numeric time value: {raw!r}") from exc
            try:
                return self.buckets.index(value)
            except ValueError:
                return 0

        try:
            ts = _truncate(pd.Timestamp(raw), self.unit)
        except (ValueError, TypeError) as exc:
            raise InvalidInputError(f"Unparseable time value: {raw!r}") from exc
        try:
            return self.buckets.index(ts)
        except ValueError:
            return 0

    def _check_range(self, int_time: int) -> int:
        int_time = int(int_time)
        if not 0 <= int_time < len(self.buckets):
            raise IndexError(f"int_time {int_time} outside the temporal axis [0, {len(self.buckets)})")
        return int_time

    def to_timestamp(self, int_time: int) -> pd.Timestamp:
        """Return the bucket start for a tick of a calendar unit."""

        if self.unit == "int":
            raise ValueError("Integer time axes have no calendar timestamps.")
        return self.buckets[self._check_range(int_time)]

    def to_calendar_label(self, int_time: int) -> Any:
        """Human-readable label for a tick (the raw value itself for ``int``)."""

        bucket = self.buckets[self._check_range(int_time)]
        if self.unit == "int":
            return bucket
        return bucket.strftime(_LABEL_FORMATS[self.unit])

    def labels(self) -> List[Any]:
        return [self.to_calendar_label(pos) for pos in range(len(self.buckets))]


def pair_time_lags(int_times: Sequence[int], ii: np.ndarray, jj: np.ndarray) -> np.ndarray:
    """Absolute tick differences for the index pairs ``(ii[k], jj[k])``."""

    t = np.asarray(int_times, dtype=float)
    if len(ii) == 0:
        return np.zeros(0, dtype=float)
    return np.abs(t[np.asarray(ii, dtype=int)] - t[np.asarray(jj, dtype=int)])
