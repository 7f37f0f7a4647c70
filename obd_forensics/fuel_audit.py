"""Fuel-audit state machine.

Lifecycle::

    idle --start_refuel--> waiting --(level rise | confirmed + moving)--> monitoring
    idle --start_quick_test--> waiting-quick --confirm_quick_test--> monitoring
    monitoring --(distance reached | stop)--> analyzing --> completed
    waiting / waiting-quick / monitoring --interrupt--> interrupted --resume--> (previous)
    any --cancel--> idle

The machine is synchronous and clock-free: every observation arrives as
a :class:`LiveTick` carrying its own timestamp, which drives distance
integration and the STFT anomaly timer.  The async polling driver lives
in :mod:`obd_forensics.refuel_monitor`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Set

import numpy as np
import structlog

from obd_forensics import fuel_forensics
from obd_forensics.config import RefuelSettings
from obd_forensics.decision_table import DecisionTable, Rule
from obd_forensics.errors import InvalidTransition
from obd_forensics.hysteresis import Cooldown, HysteresisTimer, TimerState
from obd_forensics.schemas import (
    CancellationReport,
    FlowType,
    FuelChangeContext,
    FuelQuality,
    FuelTrimSample,
    PendingSession,
    RefuelEntry,
    RefuelMode,
)

logger = structlog.get_logger(__name__)

_ACTIVE = frozenset({RefuelMode.WAITING, RefuelMode.WAITING_QUICK, RefuelMode.MONITORING})

_MILESTONES = (25, 50, 75)

# At most one live anomaly warning per this many seconds.
_ALERT_COOLDOWN_S = 30.0

_PUMP_ACCURACY_RANGE = (50, 150)


def quality_table(settings: RefuelSettings) -> DecisionTable[FuelQuality]:
    """|mean STFT| bands: below warning ok, up to critical warning, else critical."""
    return DecisionTable(
        [
            Rule("no_samples", FuelQuality.UNKNOWN, {"sample_count": (None, 1)}),
            Rule("within_warning", FuelQuality.OK, {
                "stft_abs": (None, settings.stft_warning_threshold),
            }),
            Rule("within_critical", FuelQuality.WARNING, {
                "stft_abs": (settings.stft_warning_threshold, settings.stft_critical_threshold),
            }),
            Rule("beyond_critical", FuelQuality.CRITICAL, {
                "stft_abs": (settings.stft_critical_threshold, None),
            }),
        ],
        default=FuelQuality.UNKNOWN,
    )


def pump_accuracy(
    fuel_level_before: Optional[float],
    fuel_level_after: Optional[float],
    liters_added: float,
    tank_capacity: float,
) -> Optional[int]:
    """Measured level rise as a percentage of the rise the paid litres imply.

    ``None`` unless both levels are known, the level actually rose and
    litres were declared.  Clamped to 50-150 %.
    """
    if fuel_level_before is None or fuel_level_after is None:
        return None
    if fuel_level_after <= fuel_level_before or liters_added <= 0:
        return None
    expected = liters_added / tank_capacity * 100.0
    actual = fuel_level_after - fuel_level_before
    low, high = _PUMP_ACCURACY_RANGE
    return int(round(max(low, min(high, actual / expected * 100.0))))


@dataclass(frozen=True)
class LiveTick:
    """One polling round of live values; ``None`` means not available."""

    timestamp_ms: int
    speed_kmh: Optional[float] = None
    stft: Optional[float] = None
    ltft: Optional[float] = None
    o2_voltage: Optional[float] = None
    fuel_level: Optional[float] = None


@dataclass
class RefuelContext:
    """Mutable state of the single active fuel-audit session."""

    session_id: str
    flow_type: FlowType
    mode: RefuelMode
    settings: RefuelSettings
    anomaly_timer: HysteresisTimer
    samples: List[FuelTrimSample] = field(default_factory=list)
    distance_km: float = 0.0
    fuel_level_before: Optional[float] = None
    fuel_level_after: Optional[float] = None
    current_fuel_level: Optional[float] = None
    current_stft: Optional[float] = None
    current_ltft: Optional[float] = None
    current_o2: Optional[float] = None
    price_per_liter: float = 0.0
    liters_added: float = 0.0
    station_name: Optional[str] = None
    purchase_confirmed: bool = False
    fuel_context: FuelChangeContext = FuelChangeContext.UNKNOWN
    started_at_ms: Optional[int] = None
    last_tick_ms: Optional[int] = None
    consecutive_failures: int = 0
    milestones: Set[int] = field(default_factory=set)

    @property
    def progress_percent(self) -> float:
        return min(100.0, self.distance_km / self.settings.monitoring_distance_km * 100.0)


class FuelAuditStateMachine:
    """At most one refuel / quick-test session at a time."""

    def __init__(self) -> None:
        self._mode = RefuelMode.IDLE
        self._context: Optional[RefuelContext] = None
        self._alert_cooldown = Cooldown(_ALERT_COOLDOWN_S)
        self.last_entry: Optional[RefuelEntry] = None
        self.last_cancellation: Optional[CancellationReport] = None

    # -- properties ---------------------------------------------------------

    @property
    def mode(self) -> RefuelMode:
        return self._mode

    @property
    def context(self) -> Optional[RefuelContext]:
        return self._context

    @property
    def active(self) -> bool:
        return self._mode in _ACTIVE

    # -- starting -----------------------------------------------------------

    def start_refuel(
        self,
        fuel_level: Optional[float],
        settings: Optional[RefuelSettings] = None,
    ) -> RefuelContext:
        """Snapshot the current fuel level and wait for the refuel."""
        self._check_can_start("start_refuel")
        ctx = self._new_context(FlowType.REFUEL, RefuelMode.WAITING, settings)
        ctx.fuel_level_before = fuel_level
        ctx.current_fuel_level = fuel_level
        self._enter(ctx)
        logger.info(
            "refuel_started",
            session_id=ctx.session_id,
            fuel_level_before=fuel_level,
        )
        return ctx

    def start_quick_test(self, settings: Optional[RefuelSettings] = None) -> RefuelContext:
        """Audit the fuel already in the tank, without a refuel."""
        self._check_can_start("start_quick_test")
        ctx = self._new_context(FlowType.QUICK_TEST, RefuelMode.WAITING_QUICK, settings)
        self._enter(ctx)
        logger.info("quick_test_started", session_id=ctx.session_id)
        return ctx

    def confirm_refuel(
        self,
        price_per_liter: float,
        liters_added: float,
        *,
        station_name: Optional[str] = None,
        fuel_context: FuelChangeContext = FuelChangeContext.UNKNOWN,
    ) -> None:
        """Record the purchase; monitoring starts once the car moves."""
        ctx = self._require("confirm_refuel", {RefuelMode.WAITING, RefuelMode.MONITORING})
        if ctx.flow_type != FlowType.REFUEL:
            raise InvalidTransition("confirm_refuel", self._mode.value, "not a refuel session")
        if price_per_liter < 0 or liters_added < 0:
            raise ValueError("price_per_liter and liters_added must be >= 0")
        ctx.price_per_liter = price_per_liter
        ctx.liters_added = liters_added
        ctx.station_name = station_name
        ctx.fuel_context = fuel_context
        ctx.purchase_confirmed = True
        logger.info(
            "refuel_confirmed",
            session_id=ctx.session_id,
            liters=liters_added,
            price_per_liter=price_per_liter,
            fuel_context=fuel_context.value,
        )

    def confirm_quick_test(
        self, fuel_context: FuelChangeContext = FuelChangeContext.SAME_FUEL
    ) -> None:
        ctx = self._require("confirm_quick_test", {RefuelMode.WAITING_QUICK})
        ctx.fuel_context = fuel_context
        ctx.purchase_confirmed = True
        self._begin_monitoring(ctx, reason="quick_test_confirmed")

    # -- ticking ------------------------------------------------------------

    def tick(self, tick: LiveTick) -> Optional[RefuelEntry]:
        """Feed one polling round.  Returns the entry when the session ends."""
        ctx = self._context
        if ctx is None or self._mode not in _ACTIVE:
            return None

        if tick.fuel_level is not None:
            ctx.current_fuel_level = tick.fuel_level

        if self._mode == RefuelMode.WAITING:
            self._tick_waiting(ctx, tick)
            # The tick that starts monitoring is not a sample yet.
            ctx.last_tick_ms = tick.timestamp_ms
            return None
        if self._mode == RefuelMode.WAITING_QUICK:
            return None
        return self._tick_monitoring(ctx, tick)

    def record_failure(self, reason: str) -> Optional[CancellationReport]:
        """Count a skipped sample; too many in a row cancel the session."""
        ctx = self._context
        if ctx is None or self._mode not in _ACTIVE:
            return None
        ctx.consecutive_failures += 1
        logger.warning(
            "fuel_sample_skipped",
            session_id=ctx.session_id,
            reason=reason,
            consecutive=ctx.consecutive_failures,
        )
        if ctx.consecutive_failures > ctx.settings.max_consecutive_failures:
            return self.cancel(
                f"{ctx.consecutive_failures} consecutive failed samples (last: {reason})"
            )
        return None

    def stop(self) -> RefuelEntry:
        """Finalise a monitoring session before the distance is reached."""
        ctx = self._require("stop", {RefuelMode.MONITORING})
        logger.info("monitoring_stopped_early", session_id=ctx.session_id, distance_km=ctx.distance_km)
        return self._finalise(ctx)

    # -- cancellation / interruption ----------------------------------------

    def cancel(self, reason: str = "cancelled by user") -> Optional[CancellationReport]:
        """Discard the session from any state.  Safe to call when idle."""
        ctx = self._context
        if ctx is None:
            if self._mode == RefuelMode.COMPLETED:
                self._mode = RefuelMode.IDLE
            return None
        report = CancellationReport(session=ctx.session_id, state=self._mode.value, reason=reason)
        logger.info(
            "fuel_audit_cancelled",
            session_id=ctx.session_id,
            state=self._mode.value,
            reason=reason,
            samples=len(ctx.samples),
        )
        self._reset()
        self.last_cancellation = report
        return report

    def interrupt(self, reason: str = "connection lost") -> Optional[PendingSession]:
        """Park the active session after a transport loss."""
        ctx = self._context
        if ctx is None or self._mode not in _ACTIVE:
            return None
        ctx.mode = self._mode
        ctx.anomaly_timer.interrupt()
        pending = self._snapshot(ctx, reason)
        self._mode = RefuelMode.INTERRUPTED
        logger.warning(
            "fuel_audit_interrupted",
            session_id=ctx.session_id,
            resumable_mode=ctx.mode.value,
            reason=reason,
            samples=len(ctx.samples),
        )
        return pending

    @property
    def pending(self) -> Optional[PendingSession]:
        if self._mode != RefuelMode.INTERRUPTED or self._context is None:
            return None
        return self._snapshot(self._context, "interrupted")

    def resume(self, pending: Optional[PendingSession] = None) -> RefuelContext:
        """Continue an interrupted session, or restore one loaded from storage."""
        if pending is not None:
            if self._mode not in (RefuelMode.IDLE, RefuelMode.COMPLETED, RefuelMode.INTERRUPTED):
                raise InvalidTransition("resume", self._mode.value, "a session is already active")
            ctx = self._restore(pending)
        else:
            if self._mode != RefuelMode.INTERRUPTED or self._context is None:
                raise InvalidTransition("resume", self._mode.value, "nothing to resume")
            ctx = self._context
        # The gap is never credited to distance or anomaly time.
        ctx.last_tick_ms = None
        ctx.consecutive_failures = 0
        self._context = ctx
        self._mode = ctx.mode
        logger.info(
            "fuel_audit_resumed",
            session_id=ctx.session_id,
            mode=ctx.mode.value,
            samples=len(ctx.samples),
        )
        return ctx

    def discard_pending(self) -> Optional[CancellationReport]:
        if self._mode != RefuelMode.INTERRUPTED:
            return None
        return self.cancel("interrupted session discarded")

    # -- internal: transitions ----------------------------------------------

    def _check_can_start(self, operation: str) -> None:
        if self._mode == RefuelMode.INTERRUPTED:
            raise InvalidTransition(
                operation, self._mode.value, "resume or discard the interrupted session first"
            )
        if self._mode not in (RefuelMode.IDLE, RefuelMode.COMPLETED):
            raise InvalidTransition(operation, self._mode.value, "a session is already active")

    def _require(self, operation: str, modes: Set[RefuelMode]) -> RefuelContext:
        if self._context is None or self._mode not in modes:
            raise InvalidTransition(operation, self._mode.value)
        return self._context

    def _new_context(
        self,
        flow: FlowType,
        mode: RefuelMode,
        settings: Optional[RefuelSettings],
    ) -> RefuelContext:
        settings = settings or RefuelSettings()
        return RefuelContext(
            session_id=str(uuid.uuid4()),
            flow_type=flow,
            mode=mode,
            settings=settings,
            anomaly_timer=self._make_timer(settings),
        )

    @staticmethod
    def _make_timer(settings: RefuelSettings, max_held_s: float = 0.0) -> HysteresisTimer:
        return HysteresisTimer(
            settings.anomaly_duration_warning_s,
            settings.anomaly_duration_critical_s,
            max_held_s=max_held_s,
        )

    def _enter(self, ctx: RefuelContext) -> None:
        self._context = ctx
        self._mode = ctx.mode
        self._alert_cooldown.reset()
        self.last_entry = None

    def _begin_monitoring(self, ctx: RefuelContext, reason: str) -> None:
        ctx.mode = RefuelMode.MONITORING
        self._mode = RefuelMode.MONITORING
        logger.info(
            "monitoring_started",
            session_id=ctx.session_id,
            trigger=reason,
            fuel_level_before=ctx.fuel_level_before,
            fuel_level_after=ctx.fuel_level_after,
        )

    def _reset(self) -> None:
        self._context = None
        self._mode = RefuelMode.IDLE

    # -- internal: ticks ----------------------------------------------------

    def _tick_waiting(self, ctx: RefuelContext, tick: LiveTick) -> None:
        level = tick.fuel_level
        if ctx.fuel_level_before is None and level is not None:
            ctx.fuel_level_before = level
            return
        if (
            level is not None
            and ctx.fuel_level_before is not None
            and level - ctx.fuel_level_before >= ctx.settings.refuel_detect_delta
        ):
            ctx.fuel_level_after = level
            self._begin_monitoring(ctx, reason="fuel_level_rise")
            return
        if (
            ctx.purchase_confirmed
            and tick.speed_kmh is not None
            and tick.speed_kmh > ctx.settings.start_speed_kmh
        ):
            ctx.fuel_level_after = ctx.current_fuel_level
            self._begin_monitoring(ctx, reason="vehicle_moving")

    def _tick_monitoring(self, ctx: RefuelContext, tick: LiveTick) -> Optional[RefuelEntry]:
        if tick.stft is None:
            self.record_failure("short term fuel trim unavailable")
            return None
        if ctx.last_tick_ms is not None and tick.timestamp_ms < ctx.last_tick_ms:
            self.record_failure("tick timestamp went backwards")
            return None

        ctx.consecutive_failures = 0
        if ctx.started_at_ms is None:
            ctx.started_at_ms = tick.timestamp_ms

        if ctx.last_tick_ms is not None and tick.speed_kmh is not None:
            dt_s = min((tick.timestamp_ms - ctx.last_tick_ms) / 1000.0, ctx.settings.max_tick_gap_s)
            if tick.speed_kmh >= ctx.settings.min_moving_speed_kmh:
                ctx.distance_km += tick.speed_kmh * dt_s / 3600.0
        ctx.last_tick_ms = tick.timestamp_ms

        ctx.current_stft = tick.stft
        if tick.ltft is not None:
            ctx.current_ltft = tick.ltft
        if tick.o2_voltage is not None:
            ctx.current_o2 = tick.o2_voltage
        ctx.samples.append(
            FuelTrimSample(
                timestamp_ms=tick.timestamp_ms,
                stft=tick.stft,
                ltft=tick.ltft,
                o2_voltage=tick.o2_voltage,
                distance_km=round(ctx.distance_km, 4),
            )
        )

        state = ctx.anomaly_timer.update(
            abs(tick.stft) >= ctx.settings.stft_warning_threshold, tick.timestamp_ms
        )
        if state in (TimerState.ACTIVE, TimerState.ESCALATED) and self._alert_cooldown.ready(tick.timestamp_ms):
            self._alert_cooldown.mark(tick.timestamp_ms)
            logger.warning(
                "fuel_trim_anomaly",
                session_id=ctx.session_id,
                stft=tick.stft,
                held_s=round(ctx.anomaly_timer.held_s, 1),
                level=state.value,
            )

        for milestone in _MILESTONES:
            if ctx.progress_percent >= milestone and milestone not in ctx.milestones:
                ctx.milestones.add(milestone)
                logger.info(
                    "monitoring_progress",
                    session_id=ctx.session_id,
                    percent=milestone,
                    distance_km=round(ctx.distance_km, 2),
                )

        if ctx.distance_km >= ctx.settings.monitoring_distance_km:
            return self._finalise(ctx)
        return None

    # -- internal: result ---------------------------------------------------

    def _finalise(self, ctx: RefuelContext) -> RefuelEntry:
        self._mode = RefuelMode.ANALYZING
        ctx.mode = RefuelMode.ANALYZING
        settings = ctx.settings

        stfts = [s.stft for s in ctx.samples]
        ltfts = [s.ltft for s in ctx.samples if s.ltft is not None]
        stft_average = float(np.mean(stfts)) if stfts else 0.0
        ltft_delta = ltfts[-1] - ltfts[0] if ltfts else 0.0

        quality = quality_table(settings).evaluate(
            {"sample_count": len(stfts), "stft_abs": abs(stft_average)}
        )

        timer = ctx.anomaly_timer
        anomaly = timer.fired
        details: Optional[str] = None
        if anomaly:
            details = (
                f"|STFT| stayed at or above {settings.stft_warning_threshold:g}% "
                f"for {timer.max_held_s:.0f}s"
            )
            if timer.escalated:
                details += (
                    f", beyond the {settings.anomaly_duration_critical_s:g}s critical limit"
                )

        verdict = None
        if ctx.samples:
            verdict = fuel_forensics.evaluate(ctx.samples, ctx.fuel_context, ctx.distance_km)

        fuel_level_after = ctx.fuel_level_after
        if fuel_level_after is None and ctx.flow_type == FlowType.REFUEL:
            fuel_level_after = ctx.current_fuel_level

        entry = RefuelEntry(
            id=ctx.session_id,
            flow_type=ctx.flow_type,
            station_name=ctx.station_name,
            price_per_liter=ctx.price_per_liter,
            liters_added=ctx.liters_added,
            total_paid=round(ctx.price_per_liter * ctx.liters_added, 2),
            fuel_level_before=ctx.fuel_level_before,
            fuel_level_after=fuel_level_after,
            tank_capacity=settings.tank_capacity,
            quality=quality,
            stft_average=round(stft_average, 2),
            ltft_delta=round(ltft_delta, 2),
            distance_monitored=round(ctx.distance_km, 3),
            sample_count=len(stfts),
            anomaly_detected=anomaly,
            anomaly_details=details,
            max_sustained_anomaly_seconds=round(timer.max_held_s, 1),
            pump_accuracy_percent=pump_accuracy(
                ctx.fuel_level_before, fuel_level_after, ctx.liters_added, settings.tank_capacity
            ),
            forensic_state=verdict.state if verdict else None,
            recommendation=verdict.recommendation if verdict else None,
        )

        logger.info(
            "fuel_audit_completed",
            session_id=ctx.session_id,
            quality=quality.value,
            stft_average=entry.stft_average,
            anomaly=anomaly,
            forensic_state=entry.forensic_state.value if entry.forensic_state else None,
            distance_km=entry.distance_monitored,
        )
        self._context = None
        self._mode = RefuelMode.COMPLETED
        self.last_entry = entry
        return entry

    # -- internal: persistence ----------------------------------------------

    @staticmethod
    def _snapshot(ctx: RefuelContext, reason: str) -> PendingSession:
        return PendingSession(
            session_id=ctx.session_id,
            flow_type=ctx.flow_type,
            mode=ctx.mode,
            settings=ctx.settings,
            samples=list(ctx.samples),
            distance_km=ctx.distance_km,
            fuel_level_before=ctx.fuel_level_before,
            fuel_level_after=ctx.fuel_level_after,
            price_per_liter=ctx.price_per_liter,
            liters_added=ctx.liters_added,
            station_name=ctx.station_name,
            purchase_confirmed=ctx.purchase_confirmed,
            fuel_context=ctx.fuel_context,
            max_sustained_anomaly_s=ctx.anomaly_timer.max_held_s,
            started_at_ms=ctx.started_at_ms,
            reason=reason,
        )

    def _restore(self, pending: PendingSession) -> RefuelContext:
        ctx = RefuelContext(
            session_id=pending.session_id,
            flow_type=pending.flow_type,
            mode=pending.mode,
            settings=pending.settings,
            anomaly_timer=self._make_timer(pending.settings, pending.max_sustained_anomaly_s),
            samples=list(pending.samples),
            distance_km=pending.distance_km,
            fuel_level_before=pending.fuel_level_before,
            fuel_level_after=pending.fuel_level_after,
            price_per_liter=pending.price_per_liter,
            liters_added=pending.liters_added,
            station_name=pending.station_name,
            purchase_confirmed=pending.purchase_confirmed,
            fuel_context=pending.fuel_context,
            started_at_ms=pending.started_at_ms,
        )
        for milestone in _MILESTONES:
            if ctx.progress_percent >= milestone:
                ctx.milestones.add(milestone)
        return ctx
