"""Async driver feeding live PIDs into the fuel-audit state machine."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, List, Optional

import structlog

from obd_forensics.errors import MalformedResponse, ResponseTimeout, TransportError
from obd_forensics.fuel_audit import FuelAuditStateMachine, LiveTick
from obd_forensics.fuel_type import FuelTypeChangeTracker, FuelTypeDetector
from obd_forensics.live_data import LivePidReader
from obd_forensics.pending_store import PendingSessionStore
from obd_forensics.schemas import FuelTypeChange, FuelTypeVerdict, RefuelEntry, RefuelMode

logger = structlog.get_logger(__name__)

PID_SPEED = "0D"
PID_STFT = "06"
PID_LTFT = "07"
PID_O2 = "14"
PID_FUEL_LEVEL = "2F"
PID_FUEL_STATUS = "03"


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class RefuelMonitor:
    """Polls the vehicle every *tick_interval_s* while a session is active.

    * Malformed replies and timeouts count as skipped samples.
    * A transport loss parks the session as *interrupted* and persists it
      through *store* so it can be resumed after reconnecting.
    * Fuel-type detection runs on every tick that carries both trims when a
      detector is given, whether the session is waiting or monitoring.
    """

    def __init__(
        self,
        reader: LivePidReader,
        machine: FuelAuditStateMachine,
        store: Optional[PendingSessionStore] = None,
        *,
        tick_interval_s: float = 2.0,
        clock: Callable[[], int] = _monotonic_ms,
        detector: Optional[FuelTypeDetector] = None,
        tracker: Optional[FuelTypeChangeTracker] = None,
    ) -> None:
        self._reader = reader
        self._machine = machine
        self._store = store
        self._interval = tick_interval_s
        self._clock = clock
        self._detector = detector
        self._tracker = tracker
        self.latest_fuel_type: Optional[FuelTypeVerdict] = None
        self.fuel_type_changes: List[FuelTypeChange] = []

    async def read_tick(self) -> LiveTick:
        """One polling round.  STFT failures propagate; other PIDs degrade to ``None``."""
        stft = await self._reader.read_value(PID_STFT)
        return LiveTick(
            timestamp_ms=self._clock(),
            stft=stft,
            speed_kmh=await self._optional(PID_SPEED),
            ltft=await self._optional(PID_LTFT),
            o2_voltage=await self._optional(PID_O2),
            fuel_level=await self._optional(PID_FUEL_LEVEL),
        )

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> Optional[RefuelEntry]:
        """Drive the machine until it completes, is cancelled or interrupted.

        Setting *stop_event* finalises a monitoring session early and
        cancels a session that is still waiting.  The current command is
        always allowed to finish first.
        """
        stop_event = stop_event or asyncio.Event()
        machine = self._machine

        while machine.active:
            if stop_event.is_set():
                return self._shutdown()

            if machine.mode == RefuelMode.WAITING_QUICK:
                await _interruptible_sleep(self._interval, stop_event)
                continue

            try:
                entry = await self._step()
            except TransportError as exc:
                self._interrupt(str(exc))
                return None
            if entry is not None:
                return entry

            await _interruptible_sleep(self._interval, stop_event)

        return machine.last_entry if machine.mode == RefuelMode.COMPLETED else None

    # -- internal -----------------------------------------------------------

    async def _step(self) -> Optional[RefuelEntry]:
        try:
            tick = await self.read_tick()
        except (MalformedResponse, ResponseTimeout) as exc:
            self._machine.record_failure(str(exc))
            return None
        await self._detect_fuel_type(tick)
        return self._machine.tick(tick)

    async def _optional(self, pid: str) -> Optional[float]:
        try:
            return await self._reader.read_value(pid)
        except (MalformedResponse, ResponseTimeout) as exc:
            logger.debug("optional_pid_skipped", pid=pid, error=str(exc))
            return None

    async def _detect_fuel_type(self, tick: LiveTick) -> None:
        if self._detector is None or tick.stft is None or tick.ltft is None:
            return
        status = await self._optional(PID_FUEL_STATUS)
        verdict = self._detector.update(tick.stft, tick.ltft, status)
        if verdict is None:
            logger.debug("fuel_type_suppressed", reason="open_loop")
            return
        self.latest_fuel_type = verdict
        if self._tracker is not None:
            change = self._tracker.observe(verdict, tick.timestamp_ms)
            if change is not None:
                self.fuel_type_changes.append(change)

    def _interrupt(self, reason: str) -> None:
        pending = self._machine.interrupt(reason)
        if pending is not None and self._store is not None:
            self._store.save(pending)

    def _shutdown(self) -> Optional[RefuelEntry]:
        if self._machine.mode == RefuelMode.MONITORING:
            return self._machine.stop()
        self._machine.cancel("shutdown requested")
        return None


async def _interruptible_sleep(seconds: float, event: asyncio.Event) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
