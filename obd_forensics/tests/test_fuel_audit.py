"""Tests for obd_forensics.fuel_audit -- the fuel-audit state machine."""

from __future__ import annotations

from typing import Callable, Optional

import pytest

from obd_forensics.config import RefuelSettings
from obd_forensics.errors import InvalidTransition
from obd_forensics.fuel_audit import FuelAuditStateMachine, LiveTick, pump_accuracy
from obd_forensics.schemas import (
    FlowType,
    FuelChangeContext,
    FuelQuality,
    RefuelEntry,
    RefuelMode,
)

_TICK_MS = 2_000


def _drive(
    machine: FuelAuditStateMachine,
    stft: Callable[[int], Optional[float]],
    *,
    start_ms: int = 0,
    speed: float = 60.0,
    max_ticks: int = 400,
    fuel_level: Optional[float] = None,
    tick_ms: int = _TICK_MS,
) -> Optional[RefuelEntry]:
    """Feed ticks every *tick_ms* until the session completes."""
    for i in range(max_ticks):
        t = start_ms + i * tick_ms
        entry = machine.tick(
            LiveTick(
                timestamp_ms=t,
                speed_kmh=speed,
                stft=stft(t),
                ltft=2.0,
                o2_voltage=0.1 if i % 2 else 0.9,
                fuel_level=fuel_level,
            )
        )
        if entry is not None:
            return entry
    return None


def _quick_monitoring(
    context: FuelChangeContext = FuelChangeContext.SAME_FUEL,
    settings: Optional[RefuelSettings] = None,
) -> FuelAuditStateMachine:
    machine = FuelAuditStateMachine()
    machine.start_quick_test(settings)
    machine.confirm_quick_test(context)
    assert machine.mode == RefuelMode.MONITORING
    return machine


# ===================================================================
# Monitoring outcomes
# ===================================================================


class TestMonitoring:
    def test_sustained_high_stft_is_critical_with_anomaly(self) -> None:
        machine = _quick_monitoring()
        entry = _drive(machine, lambda t: 30.0)
        assert entry is not None
        assert entry.quality == FuelQuality.CRITICAL
        assert entry.anomaly_detected is True
        assert entry.max_sustained_anomaly_seconds >= 60.0
        assert "critical limit" in entry.anomaly_details
        assert entry.distance_monitored >= 5.0
        assert machine.mode == RefuelMode.COMPLETED
        assert machine.context is None

    def test_short_bursts_do_not_raise_anomaly(self) -> None:
        # 10 s at 30 %, then 20 s at 2 %, repeated.
        machine = _quick_monitoring()
        entry = _drive(machine, lambda t: 30.0 if (t // 1000) % 30 < 10 else 2.0)
        assert entry is not None
        assert entry.anomaly_detected is False
        assert entry.max_sustained_anomaly_seconds <= 10.0

    def test_single_35s_window_raises_anomaly(self) -> None:
        machine = _quick_monitoring()
        entry = _drive(machine, lambda t: 30.0 if 60_000 <= t < 95_000 else 1.0)
        assert entry is not None
        assert entry.distance_monitored >= 5.0
        assert entry.anomaly_detected is True
        assert entry.max_sustained_anomaly_seconds == pytest.approx(34.0)

    def test_single_10s_window_is_not_an_anomaly(self) -> None:
        machine = _quick_monitoring()
        entry = _drive(machine, lambda t: 30.0 if 60_000 <= t < 70_000 else 1.0)
        assert entry is not None
        assert entry.anomaly_detected is False
        assert entry.max_sustained_anomaly_seconds == pytest.approx(8.0)

    def test_35s_window_flagged_with_10s_ticks(self) -> None:
        # Samples at 60, 70, 80 and 90 s see the window: a 30 s hold.
        machine = _quick_monitoring()
        entry = _drive(
            machine, lambda t: 30.0 if 60_000 <= t < 95_000 else 1.0, tick_ms=10_000
        )
        assert entry is not None
        assert entry.anomaly_detected is True
        assert entry.max_sustained_anomaly_seconds == pytest.approx(30.0)

    def test_sustained_30_percent_for_35s_then_stopped_is_critical(self) -> None:
        machine = _quick_monitoring()
        assert _drive(machine, lambda t: 30.0, max_ticks=18) is None
        entry = machine.stop()
        assert entry.max_sustained_anomaly_seconds == pytest.approx(34.0)
        assert entry.quality == FuelQuality.CRITICAL
        assert entry.anomaly_detected is True

    def test_clean_fuel_ok(self) -> None:
        machine = _quick_monitoring()
        entry = _drive(machine, lambda t: 1.0)
        assert entry.quality == FuelQuality.OK
        assert entry.flow_type == FlowType.QUICK_TEST
        assert entry.sample_count > 100
        assert entry.stft_average == pytest.approx(1.0)

    def test_warning_band(self) -> None:
        machine = _quick_monitoring()
        entry = _drive(machine, lambda t: -18.0)
        assert entry.quality == FuelQuality.WARNING

    def test_forensic_verdict_attached(self) -> None:
        machine = _quick_monitoring(FuelChangeContext.SAME_FUEL)
        entry = _drive(machine, lambda t: 30.0)
        assert entry.forensic_state is not None
        assert entry.recommendation

    def test_no_distance_when_stationary(self) -> None:
        machine = _quick_monitoring()
        assert _drive(machine, lambda t: 1.0, speed=1.0, max_ticks=50) is None
        assert machine.context.distance_km == 0.0
        assert len(machine.context.samples) == 50

    def test_long_gap_credited_only_up_to_max_tick_gap(self) -> None:
        machine = _quick_monitoring()
        machine.tick(LiveTick(timestamp_ms=0, speed_kmh=60.0, stft=1.0))
        machine.tick(LiveTick(timestamp_ms=600_000, speed_kmh=60.0, stft=1.0))
        # 10 s at 60 km/h
        assert machine.context.distance_km == pytest.approx(60.0 * 10 / 3600)

    def test_stop_finalises_early(self) -> None:
        machine = _quick_monitoring()
        _drive(machine, lambda t: 1.0, max_ticks=10)
        entry = machine.stop()
        assert entry.sample_count == 10
        assert machine.mode == RefuelMode.COMPLETED

    def test_missing_stft_counts_as_failure_and_cancels(self) -> None:
        machine = _quick_monitoring()
        settings = machine.context.settings
        for i in range(settings.max_consecutive_failures + 1):
            machine.tick(LiveTick(timestamp_ms=i * 1000, speed_kmh=50.0, stft=None))
        assert machine.mode == RefuelMode.IDLE
        assert machine.last_cancellation is not None
        assert "consecutive" in machine.last_cancellation.reason

    def test_successful_sample_resets_failure_count(self) -> None:
        machine = _quick_monitoring()
        for _ in range(4):
            machine.record_failure("timeout")
        machine.tick(LiveTick(timestamp_ms=0, speed_kmh=50.0, stft=1.0))
        for _ in range(4):
            machine.record_failure("timeout")
        assert machine.mode == RefuelMode.MONITORING


# ===================================================================
# Refuel flow
# ===================================================================


class TestRefuelFlow:
    def test_level_rise_starts_monitoring_and_pump_accuracy(self) -> None:
        machine = FuelAuditStateMachine()
        machine.start_refuel(20.0)
        assert machine.mode == RefuelMode.WAITING
        machine.tick(LiveTick(timestamp_ms=0, speed_kmh=0.0, fuel_level=60.0))
        assert machine.mode == RefuelMode.MONITORING

        machine.confirm_refuel(5.0, 20.0, station_name="Posto Centro")
        entry = _drive(machine, lambda t: 1.0, start_ms=2_000, fuel_level=60.0)
        assert entry.flow_type == FlowType.REFUEL
        assert entry.total_paid == pytest.approx(100.0)
        assert entry.fuel_level_before == 20.0
        assert entry.fuel_level_after == 60.0
        # 20 L of a 50 L tank = 40 points, measured 40 points
        assert entry.pump_accuracy_percent == 100
        assert entry.station_name == "Posto Centro"

    def test_confirmed_purchase_and_moving_starts_monitoring(self) -> None:
        machine = FuelAuditStateMachine()
        machine.start_refuel(30.0)
        machine.confirm_refuel(5.5, 10.0, fuel_context=FuelChangeContext.SAME_FUEL)
        machine.tick(LiveTick(timestamp_ms=0, speed_kmh=2.0, fuel_level=31.0))
        assert machine.mode == RefuelMode.WAITING
        machine.tick(LiveTick(timestamp_ms=2_000, speed_kmh=12.0, fuel_level=31.0))
        assert machine.mode == RefuelMode.MONITORING
        assert machine.context.fuel_level_after == 31.0

    def test_unknown_start_level_taken_from_first_tick(self) -> None:
        machine = FuelAuditStateMachine()
        machine.start_refuel(None)
        machine.tick(LiveTick(timestamp_ms=0, fuel_level=25.0))
        assert machine.context.fuel_level_before == 25.0
        assert machine.mode == RefuelMode.WAITING

    def test_negative_purchase_rejected(self) -> None:
        machine = FuelAuditStateMachine()
        machine.start_refuel(10.0)
        with pytest.raises(ValueError):
            machine.confirm_refuel(-1.0, 10.0)

    def test_confirm_refuel_rejected_for_quick_test(self) -> None:
        machine = FuelAuditStateMachine()
        machine.start_quick_test()
        with pytest.raises(InvalidTransition):
            machine.confirm_refuel(5.0, 10.0)


# ===================================================================
# Lifecycle
# ===================================================================


class TestLifecycle:
    def test_second_session_rejected(self) -> None:
        machine = FuelAuditStateMachine()
        machine.start_refuel(10.0)
        with pytest.raises(InvalidTransition):
            machine.start_quick_test()
        with pytest.raises(InvalidTransition):
            machine.start_refuel(10.0)

    def test_new_session_allowed_after_completion(self) -> None:
        machine = _quick_monitoring()
        machine.stop()
        machine.start_quick_test()
        assert machine.mode == RefuelMode.WAITING_QUICK
        assert machine.last_entry is None

    @pytest.mark.parametrize("stage", ["waiting", "waiting_quick", "monitoring"])
    def test_cancel_from_any_stage_resets_to_idle(self, stage: str) -> None:
        machine = FuelAuditStateMachine()
        if stage == "waiting":
            machine.start_refuel(10.0)
        elif stage == "waiting_quick":
            machine.start_quick_test()
        else:
            machine.start_quick_test()
            machine.confirm_quick_test()
            _drive(machine, lambda t: 1.0, max_ticks=5)
        report = machine.cancel("user pressed cancel")
        assert report is not None
        assert report.reason == "user pressed cancel"
        assert machine.mode == RefuelMode.IDLE
        assert machine.context is None
        assert machine.active is False

    def test_cancel_when_idle_is_noop(self) -> None:
        machine = FuelAuditStateMachine()
        assert machine.cancel() is None
        assert machine.mode == RefuelMode.IDLE

    def test_stop_outside_monitoring_rejected(self) -> None:
        machine = FuelAuditStateMachine()
        machine.start_refuel(10.0)
        with pytest.raises(InvalidTransition):
            machine.stop()


# ===================================================================
# Interruption
# ===================================================================


class TestInterruption:
    def test_interrupt_then_resume_continues_session(self) -> None:
        machine = _quick_monitoring()
        _drive(machine, lambda t: 20.0, max_ticks=10)
        distance = machine.context.distance_km
        pending = machine.interrupt("link dropped")

        assert machine.mode == RefuelMode.INTERRUPTED
        assert pending.mode == RefuelMode.MONITORING
        assert len(pending.samples) == 10
        assert machine.pending is not None
        with pytest.raises(InvalidTransition):
            machine.start_quick_test()

        machine.resume()
        assert machine.mode == RefuelMode.MONITORING
        # The offline gap is never credited.
        machine.tick(LiveTick(timestamp_ms=900_000, speed_kmh=60.0, stft=1.0))
        assert machine.context.distance_km == pytest.approx(distance)
        assert len(machine.context.samples) == 11

    def test_resume_from_stored_snapshot(self) -> None:
        machine = _quick_monitoring()
        _drive(machine, lambda t: 30.0, max_ticks=20)
        pending = machine.interrupt()

        restored = FuelAuditStateMachine()
        ctx = restored.resume(pending)
        assert restored.mode == RefuelMode.MONITORING
        assert ctx.session_id == pending.session_id
        assert ctx.anomaly_timer.max_held_s == pytest.approx(38.0)

    def test_discard_pending(self) -> None:
        machine = _quick_monitoring()
        machine.interrupt()
        report = machine.discard_pending()
        assert report is not None
        assert machine.mode == RefuelMode.IDLE

    def test_resume_without_interruption_rejected(self) -> None:
        machine = FuelAuditStateMachine()
        with pytest.raises(InvalidTransition):
            machine.resume()

    def test_interrupt_when_idle_returns_none(self) -> None:
        assert FuelAuditStateMachine().interrupt() is None


# ===================================================================
# Pump accuracy
# ===================================================================


def test_pump_accuracy_short_fill_clamped() -> None:
    assert pump_accuracy(20.0, 44.0, 20.0, 50.0) == 60
    assert pump_accuracy(20.0, 21.0, 40.0, 50.0) == 50


def test_pump_accuracy_unknown_cases() -> None:
    assert pump_accuracy(None, 60.0, 20.0, 50.0) is None
    assert pump_accuracy(60.0, 50.0, 20.0, 50.0) is None
    assert pump_accuracy(20.0, 60.0, 0.0, 50.0) is None
