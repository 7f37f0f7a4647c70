"""Tests for obd_forensics.cranking -- capture, features and verdicts."""

from __future__ import annotations

import asyncio
from typing import Callable, Sequence, Tuple

import numpy as np
import pytest

from obd_forensics.config import CrankingSettings
from obd_forensics.cranking import (
    CapturePhase,
    CrankingCapture,
    CrankingFeatures,
    battery_health_percent,
    classify,
    run_cranking_test,
)
from obd_forensics.errors import CaptureTimeout, ResponseTimeout
from obd_forensics.schemas import (
    AlternatorStatus,
    BatteryStatus,
    CrankingTestResult,
    CrankingVerdict,
)

_STEP_MS = 100

Profile = Sequence[Tuple[int, float]]

_HEALTHY: Profile = [(0, 12.6), (2000, 12.6), (2100, 9.6), (2900, 9.6), (4400, 14.2), (20000, 14.2)]
_WEAK: Profile = [(0, 12.3), (2000, 12.3), (2100, 7.6), (4600, 7.6), (6000, 13.8), (20000, 13.8)]
_NO_CHARGE: Profile = [(0, 12.6), (2000, 12.6), (2100, 9.6), (2900, 9.6), (3500, 12.5), (20000, 12.5)]

# Rest 12.6 V, 9.2 V held 800 ms, back to 14.2 V within 1.5 s.
_REFERENCE_HEALTHY: Profile = [(0, 12.6), (2000, 12.6), (2100, 9.2), (2900, 9.2), (4400, 14.2), (20000, 14.2)]
# 7.5 V held 2.5 s, then a slow climb.
_REFERENCE_COLLAPSE: Profile = [(0, 12.6), (2000, 12.6), (2100, 7.5), (4600, 7.5), (9600, 13.8), (30000, 13.8)]


def _volts_at(profile: Profile) -> Callable[[int], float]:
    xs = [t for t, _ in profile]
    ys = [v for _, v in profile]
    return lambda t: round(float(np.interp(t, xs, ys)), 3)


def _capture(profile: Profile, until_ms: int = 30_000) -> CrankingCapture:
    capture = CrankingCapture(CrankingSettings())
    volts = _volts_at(profile)
    for t in range(0, until_ms, _STEP_MS):
        if capture.feed(t, volts(t)) == CapturePhase.COMPLETE:
            break
    return capture


# ===================================================================
# Capture state machine
# ===================================================================


class TestCrankingCapture:
    def test_healthy_crank(self) -> None:
        capture = _capture(_HEALTHY)
        assert capture.complete
        assert capture.resting_voltage == pytest.approx(12.6)
        assert capture.crank_start_ms == 2100
        assert capture.truncated is False

        result = capture.result()
        assert result.classification == CrankingVerdict.OK
        assert result.battery_status == BatteryStatus.GOOD
        assert result.alternator_status == AlternatorStatus.OK
        assert result.min_voltage == pytest.approx(9.6)
        assert result.sag_duration_ms == 1500
        assert result.stabilized_voltage == pytest.approx(14.2)
        assert result.recovery_slope == pytest.approx(3.067, abs=0.01)
        assert result.battery_health_percent == 70
        assert result.confidence == 1.0
        assert result.voltage_drop == pytest.approx(3.0)

    def test_collapsing_battery_is_critical(self) -> None:
        result = _capture(_WEAK).result()
        assert result.classification == CrankingVerdict.BATTERY_CRITICAL
        assert result.battery_status == BatteryStatus.CRITICAL
        assert result.battery_health_percent == 3

    def test_low_charging_voltage_blames_alternator(self) -> None:
        result = _capture(_NO_CHARGE).result()
        assert result.classification == CrankingVerdict.ALTERNATOR_FAIL
        assert result.alternator_status == AlternatorStatus.FAIL

    def test_settling_completes_after_stable_window(self) -> None:
        capture = _capture(_HEALTHY)
        window = capture.settle_window()
        assert window[0].timestamp_ms == 4400
        assert window[-1].timestamp_ms - window[0].timestamp_ms >= 2000

    def test_samples_after_completion_ignored(self) -> None:
        capture = _capture(_HEALTHY)
        n = len(capture.series)
        assert capture.feed(99_000, 5.0) == CapturePhase.COMPLETE
        assert len(capture.series) == n

    def test_no_recovery_truncates_and_halves_confidence(self) -> None:
        capture = _capture([(0, 12.6), (2000, 12.6), (2100, 10.0), (60000, 10.0)], until_ms=60_000)
        assert capture.complete
        assert capture.truncated is True
        assert capture.result().confidence == 0.5

    def test_small_dips_do_not_arm(self) -> None:
        capture = _capture([(0, 12.6), (2000, 12.6), (2100, 11.9), (4000, 12.6)], until_ms=5_000)
        assert capture.phase == CapturePhase.ARMED
        with pytest.raises(ValueError):
            capture.result()

    def test_reference_healthy_crank(self) -> None:
        result = _capture(_REFERENCE_HEALTHY).result()
        assert result.classification == CrankingVerdict.OK
        assert result.battery_status == BatteryStatus.GOOD
        assert result.alternator_status == AlternatorStatus.OK
        assert result.min_voltage == pytest.approx(9.2)
        assert result.stabilized_voltage == pytest.approx(14.2)

    def test_reference_collapsing_crank(self) -> None:
        capture = _capture(_REFERENCE_COLLAPSE, until_ms=40_000)
        result = capture.result()
        assert result.classification == CrankingVerdict.BATTERY_CRITICAL
        assert result.battery_status == BatteryStatus.CRITICAL
        assert result.min_voltage == pytest.approx(7.5)
        assert result.sag_duration_ms >= 2500
        assert result.battery_health_percent == 0

    def test_capturing_without_crank_start_raises(self) -> None:
        capture = CrankingCapture(CrankingSettings())
        capture._phase = CapturePhase.CAPTURING
        with pytest.raises(RuntimeError):
            capture.feed(0, 9.0)


# ===================================================================
# Classification
# ===================================================================


def _features(**overrides) -> CrankingFeatures:
    values = dict(
        resting_voltage=12.6,
        min_voltage=10.0,
        sag_duration_ms=1200,
        sag_sample_count=12,
        recovery_slope=3.0,
        stabilized_voltage=14.2,
    )
    values.update(overrides)
    return CrankingFeatures(**values)


@pytest.mark.parametrize(
    "overrides, verdict",
    [
        ({}, CrankingVerdict.OK),
        ({"min_voltage": 7.9}, CrankingVerdict.BATTERY_CRITICAL),
        ({"min_voltage": 8.5, "sag_duration_ms": 2000}, CrankingVerdict.BATTERY_CRITICAL),
        ({"min_voltage": 8.5}, CrankingVerdict.BATTERY_WEAK),
        ({"sag_duration_ms": 2600}, CrankingVerdict.BATTERY_WEAK),
        ({"stabilized_voltage": 12.8}, CrankingVerdict.ALTERNATOR_FAIL),
        ({"stabilized_voltage": 13.2}, CrankingVerdict.ALTERNATOR_WEAK),
        ({"recovery_slope": 0.5}, CrankingVerdict.ALTERNATOR_WEAK),
        ({"min_voltage": 8.5, "stabilized_voltage": 12.5}, CrankingVerdict.ALTERNATOR_FAIL),
    ],
)
def test_verdict_rows(overrides, verdict) -> None:
    result = classify(_features(**overrides), CrankingSettings())
    assert result.classification == verdict


def test_confidence_scales_with_sag_samples() -> None:
    result = classify(_features(sag_sample_count=2), CrankingSettings(min_sag_samples=5))
    assert result.confidence == pytest.approx(0.4)


def test_excellent_battery_above_health_80() -> None:
    result = classify(_features(min_voltage=10.2), CrankingSettings())
    assert result.battery_status == BatteryStatus.EXCELLENT


@pytest.mark.parametrize("volts, expected", [(7.0, 0), (7.5, 0), (9.0, 50), (10.5, 100), (12.0, 100)])
def test_battery_health_percent(volts: float, expected: int) -> None:
    assert battery_health_percent(volts) == expected


# ===================================================================
# Async driver
# ===================================================================


class _ProfileReader:
    """Battery voltage that follows *profile*; each read advances 100 ms."""

    def __init__(self, profile: Profile, *, fail: bool = False) -> None:
        self.now = 0
        self._volts = _volts_at(profile)
        self._fail = fail
        self.reads = 0

    def clock(self) -> int:
        return self.now

    async def read_voltage(self) -> float:
        self.now += _STEP_MS
        self.reads += 1
        if self._fail:
            raise ResponseTimeout("ATRV", 0.1)
        return self._volts(self.now)


_FAST = CrankingSettings(sample_interval_s=0.001)


@pytest.mark.asyncio
async def test_run_cranking_test_captures_crank() -> None:
    reader = _ProfileReader(_HEALTHY)
    result = await run_cranking_test(reader, _FAST, clock=reader.clock)
    assert isinstance(result, CrankingTestResult)
    assert result.classification == CrankingVerdict.OK
    assert result.samples[0].timestamp_ms == result.crank_start_ms


@pytest.mark.asyncio
async def test_run_cranking_test_times_out_without_crank() -> None:
    reader = _ProfileReader([(0, 12.6), (100_000, 12.6)])
    settings = CrankingSettings(sample_interval_s=0.001, wait_timeout_s=1.0)
    with pytest.raises(CaptureTimeout):
        await run_cranking_test(reader, settings, clock=reader.clock)
    assert reader.reads == 10


@pytest.mark.asyncio
async def test_run_cranking_test_cancelled_returns_none() -> None:
    reader = _ProfileReader(_HEALTHY)
    stop = asyncio.Event()
    stop.set()
    assert await run_cranking_test(reader, _FAST, stop_event=stop, clock=reader.clock) is None
    assert reader.reads == 0


@pytest.mark.asyncio
async def test_run_cranking_test_gives_up_after_repeated_timeouts() -> None:
    reader = _ProfileReader(_HEALTHY, fail=True)
    settings = CrankingSettings(sample_interval_s=0.001, max_consecutive_failures=3)
    with pytest.raises(ResponseTimeout):
        await run_cranking_test(reader, settings, clock=reader.clock)
    assert reader.reads == 4
