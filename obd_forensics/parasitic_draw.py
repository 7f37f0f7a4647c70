"""Parasitic draw monitor: slow voltage trace with the engine off.

The overall drain rate is the least-squares slope over the whole window.
Loads that cycle on and off show up as steps rather than as a steady
slope, so the trace is also scanned pairwise: consecutive samples whose
instantaneous drain exceeds ``drain_threshold_mv_per_min`` form an
anomaly window when the run lasts at least ``min_anomaly_window_s``.

The window advances on a boot-time clock between samples, not on tick
count, so a host that suspends mid-capture still ends on time.  A clock
that steps backwards is clamped to the last sample.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from obd_forensics.config import ParasiticDrawSettings
from obd_forensics.decision_table import DecisionTable, Rule
from obd_forensics.errors import MalformedResponse, ResponseTimeout
from obd_forensics.live_data import LivePidReader
from obd_forensics.schemas import AnomalyWindow, DrawLevel, ParasiticDrawResult, VoltagePoint
from obd_forensics.voltage_series import VoltageSeries, linear_slope, to_series
from obd_forensics.wake_lock import NullWakeLock, WakeLock

logger = structlog.get_logger(__name__)

# Resting voltage falls roughly 700 mV between a full and an empty
# lead-acid battery.
_FULL_TO_EMPTY_MV = 700.0

DRAW_TABLE: DecisionTable[DrawLevel] = DecisionTable(
    [
        Rule("normal", DrawLevel.NORMAL, {"drain_rate_mv_per_min": (None, 2.0)}),
        Rule("moderate", DrawLevel.MODERATE, {"drain_rate_mv_per_min": (2.0, 5.0)}),
        Rule("excessive", DrawLevel.EXCESSIVE, {"drain_rate_mv_per_min": (5.0, 15.0)}),
    ],
    default=DrawLevel.CRITICAL,
)

_INTERMITTENT_BASE = frozenset({DrawLevel.NORMAL, DrawLevel.MODERATE})


# ---------------------------------------------------------------------------
# Pure analysis
# ---------------------------------------------------------------------------

def drain_rate_mv_per_min(points: Sequence[VoltagePoint]) -> float:
    """Positive when the voltage is falling."""
    return -linear_slope(points) * 1000.0 * 60.0


def _find_contiguous_runs(mask: np.ndarray) -> List[Tuple[int, int]]:
    """Convert a boolean array into inclusive ``(start, end)`` index pairs."""
    if len(mask) == 0:
        return []

    runs: List[Tuple[int, int]] = []
    in_run = False
    start = 0

    for i, val in enumerate(mask):
        if val and not in_run:
            start = i
            in_run = True
        elif not val and in_run:
            runs.append((start, i - 1))
            in_run = False

    if in_run:
        runs.append((start, len(mask) - 1))

    return runs


def find_anomaly_windows(
    points: Sequence[VoltagePoint],
    threshold_mv_per_min: float,
    min_duration_s: float = 0.0,
) -> List[AnomalyWindow]:
    """Sub-intervals whose pairwise drain rate exceeds *threshold_mv_per_min*.

    A window spans from the first sample of its first steep pair to the
    last sample of its last steep pair.
    """
    if len(points) < 2:
        return []

    series = to_series(points)
    dt_min = np.diff(series.index.to_numpy(dtype=float)) / 60000.0
    dv_mv = series.diff().to_numpy()[1:] * 1000.0
    with np.errstate(divide="ignore", invalid="ignore"):
        rates = np.where(dt_min > 0, -dv_mv / dt_min, 0.0)

    windows: List[AnomalyWindow] = []
    for start, end in _find_contiguous_runs(rates > threshold_mv_per_min):
        start_ms = points[start].timestamp_ms
        end_ms = points[end + 1].timestamp_ms
        if (end_ms - start_ms) / 1000.0 < min_duration_s:
            continue
        windows.append(
            AnomalyWindow(
                start_ms=start_ms,
                end_ms=end_ms,
                peak_drain_mv_per_min=round(float(rates[start:end + 1].max()), 2),
            )
        )
    return windows


def estimate_draw_milliamps(rate_mv_per_min: float, capacity_ah: float) -> int:
    """Rough current equivalent of a resting-voltage drain rate."""
    if rate_mv_per_min <= 0:
        return 0
    capacity_fraction_per_h = rate_mv_per_min * 60.0 / _FULL_TO_EMPTY_MV
    return int(round(capacity_fraction_per_h * capacity_ah * 1000.0))


def analyze_drain(
    points: Sequence[VoltagePoint],
    settings: Optional[ParasiticDrawSettings] = None,
) -> ParasiticDrawResult:
    """Classify a finished trace.  Needs at least two samples."""
    settings = settings or ParasiticDrawSettings()
    if len(points) < 2:
        raise ValueError("Parasitic draw analysis needs at least two samples")

    rate = round(drain_rate_mv_per_min(points), 3)
    windows = find_anomaly_windows(
        points,
        settings.drain_threshold_mv_per_min,
        settings.min_anomaly_window_s,
    )
    level = DRAW_TABLE.evaluate({"drain_rate_mv_per_min": rate})
    if windows and level in _INTERMITTENT_BASE:
        level = DrawLevel.INTERMITTENT

    duration_min = (points[-1].timestamp_ms - points[0].timestamp_ms) / 60000.0
    return ParasiticDrawResult(
        samples=tuple(points),
        drain_rate_mv_per_min=rate,
        classification=level,
        anomaly_windows=tuple(windows),
        start_voltage=points[0].volts,
        end_voltage=points[-1].volts,
        duration_minutes=round(duration_min, 2),
        estimated_draw_milliamps=estimate_draw_milliamps(rate, settings.battery_capacity_ah),
    )


# ---------------------------------------------------------------------------
# Async driver
# ---------------------------------------------------------------------------

if hasattr(time, "CLOCK_BOOTTIME"):
    def _elapsed_clock_ms() -> int:
        """Milliseconds since boot, suspended time included."""
        return int(time.clock_gettime(time.CLOCK_BOOTTIME) * 1000)
else:
    def _elapsed_clock_ms() -> int:
        return int(time.time() * 1000)


async def run_parasitic_draw(
    reader: LivePidReader,
    settings: Optional[ParasiticDrawSettings] = None,
    *,
    wake_lock: Optional[WakeLock] = None,
    stop_event: Optional[asyncio.Event] = None,
    clock: Callable[[], int] = _elapsed_clock_ms,
) -> Optional[ParasiticDrawResult]:
    """Sample voltage for ``window_minutes`` and classify the drain.

    The wake lock is held for the whole capture and released on every
    exit path.  Returns ``None`` when *stop_event* ends the capture early.
    """
    settings = settings or ParasiticDrawSettings()
    stop_event = stop_event or asyncio.Event()
    wake_lock = wake_lock or NullWakeLock()
    series = VoltageSeries()
    window_ms = settings.window_minutes * 60000.0
    failures = 0

    async with wake_lock:
        started = clock()
        logger.info(
            "parasitic_draw_started",
            window_minutes=settings.window_minutes,
            interval_s=settings.sample_interval_s,
        )
        while True:
            if stop_event.is_set():
                logger.info("parasitic_draw_cancelled", samples=len(series))
                return None

            now = clock()
            last = series.last
            if last is not None and now < last.timestamp_ms:
                logger.warning("clock_stepped_backwards", by_ms=last.timestamp_ms - now)
                now = last.timestamp_ms
            try:
                volts = await reader.read_voltage()
            except (MalformedResponse, ResponseTimeout) as exc:
                failures += 1
                logger.warning("voltage_sample_failed", error=str(exc), consecutive=failures)
                if failures > settings.max_consecutive_failures:
                    raise
            else:
                failures = 0
                series.append(now, volts)

            elapsed = max(clock(), now) - started
            if elapsed >= window_ms:
                break
            if len(series) and len(series) % 30 == 0:
                logger.info(
                    "parasitic_draw_progress",
                    elapsed_min=round(elapsed / 60000.0, 1),
                    samples=len(series),
                    volts=series.last.volts if series.last else None,
                )
            await _interruptible_sleep(settings.sample_interval_s, stop_event)

    result = analyze_drain(series.points, settings)
    logger.info(
        "parasitic_draw_completed",
        level=result.classification.value,
        drain_mv_per_min=result.drain_rate_mv_per_min,
        windows=len(result.anomaly_windows),
        estimated_ma=result.estimated_draw_milliamps,
    )
    return result


async def _interruptible_sleep(seconds: float, event: asyncio.Event) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
