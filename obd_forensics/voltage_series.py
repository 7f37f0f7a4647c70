"""Append-only battery voltage series owned by one capture session."""

from __future__ import annotations

import math
from typing import Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from obd_forensics.schemas import VoltagePoint


class VoltageSeries:
    """Ordered voltage samples with non-decreasing timestamps.

    Analyses consume :attr:`points` (an immutable tuple); only the owning
    capture appends.  :meth:`restart` starts a fresh capture.
    """

    def __init__(self) -> None:
        self._points: List[VoltagePoint] = []

    def append(self, timestamp_ms: int, volts: float) -> VoltagePoint:
        if not math.isfinite(volts):
            raise ValueError(f"volts must be finite, got {volts}")
        if self._points and timestamp_ms < self._points[-1].timestamp_ms:
            raise ValueError(
                f"timestamp {timestamp_ms} precedes {self._points[-1].timestamp_ms}"
            )
        point = VoltagePoint(timestamp_ms=timestamp_ms, volts=volts)
        self._points.append(point)
        return point

    def restart(self) -> None:
        self._points = []

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self) -> Iterator[VoltagePoint]:
        return iter(self._points)

    @property
    def points(self) -> Tuple[VoltagePoint, ...]:
        return tuple(self._points)

    @property
    def last(self) -> Optional[VoltagePoint]:
        return self._points[-1] if self._points else None

    @property
    def duration_ms(self) -> int:
        if len(self._points) < 2:
            return 0
        return self._points[-1].timestamp_ms - self._points[0].timestamp_ms

    def to_series(self) -> pd.Series:
        """Volts indexed by timestamp in milliseconds."""
        return to_series(self._points)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def to_series(points: Sequence[VoltagePoint]) -> pd.Series:
    return pd.Series(
        [p.volts for p in points],
        index=pd.Index([p.timestamp_ms for p in points], name="timestamp_ms"),
        name="volts",
        dtype=float,
    )


def linear_slope(points: Sequence[VoltagePoint]) -> float:
    """Least-squares slope in volts per second (0 with fewer than 2 distinct times).

    Time is taken relative to the first sample.
    """
    if len(points) < 2:
        return 0.0
    t = np.array([p.timestamp_ms for p in points], dtype=float)
    t = (t - t[0]) / 1000.0
    v = np.array([p.volts for p in points], dtype=float)
    if np.ptp(t) == 0:
        return 0.0
    slope, _intercept = np.polyfit(t, v, 1)
    return float(slope)
