"""Cranking burst capture and battery / alternator classification.

The capture is armed with a rolling resting baseline.  A drop of at
least ``crank_drop_volts`` below that baseline marks the start of the
crank; sampling then continues through the sag and the recovery until
the voltage stays within ``settle_tolerance_volts`` for
``settle_duration_ms``.

Features
--------
* ``resting_voltage``    -- median of the baseline window.
* ``min_voltage``        -- lowest sample of the capture.
* ``sag_duration_ms``    -- time spent below the crank threshold
  (``resting - crank_drop_volts``).
* ``recovery_slope``     -- 10 % to 90 % rise rate from the minimum to
  the stabilised voltage, in volts per second.
* ``stabilized_voltage`` -- median of the settle window (charging voltage).
"""

from __future__ import annotations

import asyncio
import statistics
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional, Sequence

import structlog

from obd_forensics.config import CrankingSettings
from obd_forensics.decision_table import DecisionTable, Rule
from obd_forensics.errors import CaptureTimeout, MalformedResponse, ResponseTimeout
from obd_forensics.live_data import LivePidReader
from obd_forensics.schemas import (
    AlternatorStatus,
    BatteryStatus,
    CrankingTestResult,
    CrankingVerdict,
    VoltagePoint,
)
from obd_forensics.voltage_series import VoltageSeries

logger = structlog.get_logger(__name__)

# Health percentage maps the cranking minimum linearly onto 0-100 %.
_HEALTH_FLOOR_V = 7.5
_HEALTH_CEIL_V = 10.5

_TRUNCATED_CONFIDENCE_FACTOR = 0.5

CRANKING_TABLE: DecisionTable[CrankingVerdict] = DecisionTable(
    [
        Rule("collapse", CrankingVerdict.BATTERY_CRITICAL, {"min_voltage": (None, 8.0)}),
        Rule("deep_long_sag", CrankingVerdict.BATTERY_CRITICAL, {
            "min_voltage": (None, 9.0), "sag_duration_ms": (2000, None),
        }),
        Rule("not_charging", CrankingVerdict.ALTERNATOR_FAIL, {
            "stabilized_voltage": (None, 13.0),
        }),
        Rule("deep_sag", CrankingVerdict.BATTERY_WEAK, {"min_voltage": (None, 9.0)}),
        Rule("long_sag", CrankingVerdict.BATTERY_WEAK, {"sag_duration_ms": (2500, None)}),
        Rule("low_charge", CrankingVerdict.ALTERNATOR_WEAK, {
            "stabilized_voltage": (13.0, 13.5),
        }),
        Rule("slow_recovery", CrankingVerdict.ALTERNATOR_WEAK, {"recovery_slope": (None, 1.0)}),
    ],
    default=CrankingVerdict.OK,
)

ALTERNATOR_TABLE: DecisionTable[AlternatorStatus] = DecisionTable(
    [
        Rule("not_charging", AlternatorStatus.FAIL, {"stabilized_voltage": (None, 13.0)}),
        Rule("low_charge", AlternatorStatus.WEAK, {"stabilized_voltage": (13.0, 13.5)}),
        Rule("slow_recovery", AlternatorStatus.WEAK, {"recovery_slope": (None, 1.0)}),
    ],
    default=AlternatorStatus.OK,
)


class CapturePhase(str, Enum):
    ARMED = "armed"
    CAPTURING = "capturing"
    SETTLING = "settling"
    COMPLETE = "complete"


@dataclass(frozen=True)
class CrankingFeatures:
    resting_voltage: float
    min_voltage: float
    sag_duration_ms: int
    sag_sample_count: int
    recovery_slope: float
    stabilized_voltage: float


class CrankingCapture:
    """Sample-driven capture state machine (no I/O, no clock)."""

    def __init__(self, settings: Optional[CrankingSettings] = None) -> None:
        self.settings = settings or CrankingSettings()
        self.series = VoltageSeries()
        self._baseline: Deque[float] = deque(maxlen=self.settings.baseline_samples)
        self._phase = CapturePhase.ARMED
        self.resting_voltage: Optional[float] = None
        self.crank_start_ms: Optional[int] = None
        self._anchor: Optional[VoltagePoint] = None
        self.truncated = False

    @property
    def phase(self) -> CapturePhase:
        return self._phase

    @property
    def complete(self) -> bool:
        return self._phase == CapturePhase.COMPLETE

    @property
    def crank_threshold(self) -> Optional[float]:
        if self.resting_voltage is None:
            return None
        return self.resting_voltage - self.settings.crank_drop_volts

    def feed(self, timestamp_ms: int, volts: float) -> CapturePhase:
        """Consume one sample and return the phase afterwards."""
        if self._phase == CapturePhase.COMPLETE:
            return self._phase

        if self._phase == CapturePhase.ARMED:
            self._feed_armed(timestamp_ms, volts)
            return self._phase

        self.series.append(timestamp_ms, volts)
        start, threshold = self.crank_start_ms, self.crank_threshold
        if start is None or threshold is None:
            raise RuntimeError(f"Capture in phase {self._phase} has no crank start")
        if self._phase == CapturePhase.CAPTURING and volts >= threshold:
            self._phase = CapturePhase.SETTLING
            self._anchor = VoltagePoint(timestamp_ms=timestamp_ms, volts=volts)
            logger.debug("crank_recovering", t_ms=timestamp_ms, volts=volts)
        elif self._phase == CapturePhase.SETTLING:
            self._feed_settling(timestamp_ms, volts)

        if (
            self._phase != CapturePhase.COMPLETE
            and timestamp_ms - start >= self.settings.max_capture_ms
        ):
            self.truncated = True
            self._phase = CapturePhase.COMPLETE
            logger.warning("crank_capture_truncated", max_capture_ms=self.settings.max_capture_ms)
        return self._phase

    def _feed_armed(self, timestamp_ms: int, volts: float) -> None:
        if self._baseline:
            resting = statistics.median(self._baseline)
            if volts <= resting - self.settings.crank_drop_volts:
                self.resting_voltage = resting
                self.crank_start_ms = timestamp_ms
                self.series.restart()
                self.series.append(timestamp_ms, volts)
                self._phase = CapturePhase.CAPTURING
                logger.info(
                    "crank_detected",
                    resting_voltage=round(resting, 2),
                    volts=volts,
                    t_ms=timestamp_ms,
                )
                return
        self._baseline.append(volts)

    def _feed_settling(self, timestamp_ms: int, volts: float) -> None:
        anchor = self._anchor
        if anchor is None or abs(volts - anchor.volts) > self.settings.settle_tolerance_volts:
            self._anchor = VoltagePoint(timestamp_ms=timestamp_ms, volts=volts)
            return
        if timestamp_ms - anchor.timestamp_ms >= self.settings.settle_duration_ms:
            self._phase = CapturePhase.COMPLETE
            logger.info("crank_settled", t_ms=timestamp_ms, volts=volts)

    # -- analysis -----------------------------------------------------------

    def settle_window(self) -> List[VoltagePoint]:
        if self._anchor is None:
            return list(self.series.points[-1:])
        return [p for p in self.series if p.timestamp_ms >= self._anchor.timestamp_ms]

    def result(self) -> CrankingTestResult:
        """Features plus verdict; only valid once :attr:`complete`."""
        if self.resting_voltage is None or self.crank_start_ms is None or not self.series:
            raise ValueError("No crank captured")
        features = extract_features(
            self.series.points,
            self.resting_voltage,
            self.settings.crank_drop_volts,
            self.settle_window(),
        )
        return classify(
            features,
            self.settings,
            crank_start_ms=self.crank_start_ms,
            samples=self.series.points,
            truncated=self.truncated,
        )


# ---------------------------------------------------------------------------
# Pure analysis
# ---------------------------------------------------------------------------

def extract_features(
    points: Sequence[VoltagePoint],
    resting_voltage: float,
    crank_drop_volts: float,
    settle_window: Sequence[VoltagePoint],
) -> CrankingFeatures:
    threshold = resting_voltage - crank_drop_volts
    min_index = min(range(len(points)), key=lambda i: points[i].volts)
    min_voltage = points[min_index].volts

    below = [i for i, p in enumerate(points) if p.volts < threshold]
    sag_ms = 0
    if below:
        first = below[0]
        end_ms = points[-1].timestamp_ms
        for p in points[first:]:
            if p.volts >= threshold:
                end_ms = p.timestamp_ms
                break
        sag_ms = end_ms - points[first].timestamp_ms

    window = settle_window or points[-1:]
    stabilized = float(statistics.median(p.volts for p in window))

    slope = 0.0
    rise = stabilized - min_voltage
    if rise > 0:
        v10 = min_voltage + 0.1 * rise
        v90 = min_voltage + 0.9 * rise
        after = points[min_index:]
        t10 = next((p.timestamp_ms for p in after if p.volts >= v10), None)
        t90 = next((p.timestamp_ms for p in after if p.volts >= v90), None)
        if t10 is not None and t90 is not None:
            slope = (v90 - v10) / (max(t90 - t10, 1) / 1000.0)

    return CrankingFeatures(
        resting_voltage=round(resting_voltage, 3),
        min_voltage=round(min_voltage, 3),
        sag_duration_ms=int(sag_ms),
        sag_sample_count=len(below),
        recovery_slope=round(slope, 3),
        stabilized_voltage=round(stabilized, 3),
    )


def battery_health_percent(min_voltage: float) -> int:
    span = _HEALTH_CEIL_V - _HEALTH_FLOOR_V
    return int(round(max(0.0, min(100.0, (min_voltage - _HEALTH_FLOOR_V) / span * 100.0))))


def classify(
    features: CrankingFeatures,
    settings: CrankingSettings,
    *,
    crank_start_ms: int = 0,
    samples: Sequence[VoltagePoint] = (),
    truncated: bool = False,
) -> CrankingTestResult:
    row = {
        "min_voltage": features.min_voltage,
        "sag_duration_ms": features.sag_duration_ms,
        "stabilized_voltage": features.stabilized_voltage,
        "recovery_slope": features.recovery_slope,
    }
    verdict = CRANKING_TABLE.evaluate(row)
    health = battery_health_percent(features.min_voltage)

    if verdict == CrankingVerdict.BATTERY_CRITICAL:
        battery = BatteryStatus.CRITICAL
    elif verdict == CrankingVerdict.BATTERY_WEAK:
        battery = BatteryStatus.WEAK
    elif health >= 80:
        battery = BatteryStatus.EXCELLENT
    else:
        battery = BatteryStatus.GOOD

    confidence = min(1.0, features.sag_sample_count / settings.min_sag_samples)
    if truncated:
        confidence *= _TRUNCATED_CONFIDENCE_FACTOR

    return CrankingTestResult(
        resting_voltage=features.resting_voltage,
        min_voltage=features.min_voltage,
        sag_duration_ms=features.sag_duration_ms,
        recovery_slope=features.recovery_slope,
        stabilized_voltage=features.stabilized_voltage,
        classification=verdict,
        confidence=round(confidence, 3),
        battery_status=battery,
        alternator_status=ALTERNATOR_TABLE.evaluate(row),
        battery_health_percent=health,
        sag_sample_count=features.sag_sample_count,
        crank_start_ms=crank_start_ms,
        samples=tuple(samples),
    )


# ---------------------------------------------------------------------------
# Async driver
# ---------------------------------------------------------------------------

def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


async def run_cranking_test(
    reader: LivePidReader,
    settings: Optional[CrankingSettings] = None,
    *,
    stop_event: Optional[asyncio.Event] = None,
    clock: Callable[[], int] = _monotonic_ms,
) -> Optional[CrankingTestResult]:
    """Sample battery voltage until a crank has been captured and settled.

    Returns ``None`` when *stop_event* is set first.  Raises
    :class:`CaptureTimeout` when no crank is seen within
    ``wait_timeout_s``; transport faults propagate.
    """
    settings = settings or CrankingSettings()
    stop_event = stop_event or asyncio.Event()
    capture = CrankingCapture(settings)
    started = clock()
    failures = 0

    logger.info("cranking_test_armed", wait_timeout_s=settings.wait_timeout_s)
    while not capture.complete:
        if stop_event.is_set():
            logger.info("cranking_test_cancelled", phase=capture.phase.value)
            return None
        if (
            capture.phase == CapturePhase.ARMED
            and clock() - started >= settings.wait_timeout_s * 1000
        ):
            raise CaptureTimeout("cranking", settings.wait_timeout_s)

        round_start = clock()
        try:
            volts = await reader.read_voltage()
        except (MalformedResponse, ResponseTimeout) as exc:
            failures += 1
            logger.warning("voltage_sample_failed", error=str(exc), consecutive=failures)
            if failures > settings.max_consecutive_failures:
                raise
        else:
            failures = 0
            capture.feed(clock(), volts)

        spent_s = (clock() - round_start) / 1000.0
        await asyncio.sleep(max(0.0, settings.sample_interval_s - spent_s))

    result = capture.result()
    logger.info(
        "cranking_test_completed",
        verdict=result.classification.value,
        min_voltage=result.min_voltage,
        sag_ms=result.sag_duration_ms,
        stabilized=result.stabilized_voltage,
        confidence=result.confidence,
    )
    return result
