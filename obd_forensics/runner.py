"""Command drivers: open a vehicle session, run one analysis, post the result."""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import structlog

from obd_forensics import pids
from obd_forensics.config import ForensicsSettings
from obd_forensics.cranking import run_cranking_test
from obd_forensics.errors import ForensicsError, NegativeResponse
from obd_forensics.fuel_audit import FuelAuditStateMachine
from obd_forensics.fuel_type import FuelTypeChangeTracker, FuelTypeDetector
from obd_forensics.parasitic_draw import run_parasitic_draw
from obd_forensics.pending_store import PendingSessionStore
from obd_forensics.refuel_monitor import (
    PID_FUEL_LEVEL,
    PID_FUEL_STATUS,
    PID_LTFT,
    PID_STFT,
    RefuelMonitor,
)
from obd_forensics.result_poster import ResultPoster
from obd_forensics.schemas import (
    DiagnosticTroubleCode,
    DtcKind,
    DtcScanResult,
    FuelChangeContext,
    FuelTypeVerdict,
    PidReading,
)
from obd_forensics.session import VehicleSession
from obd_forensics.transport.base import TransportChannel
from obd_forensics.wake_lock import create_wake_lock

logger = structlog.get_logger(__name__)

LIVE_PIDS: Sequence[str] = ("0C", "0D", "03", "05", "06", "07", "2F", "42")

COMMANDS = ("live", "probe", "dtc", "crank", "drain", "quick-test", "refuel")


def create_transport(settings: ForensicsSettings) -> TransportChannel:
    """Factory: return the right byte channel for the current config.

    ``SerialTransport`` is imported lazily so simulation and Wi-Fi modes
    work without pyserial installed.
    """
    if settings.is_simulation:
        from obd_forensics.transport.simulation import SimulatedAdapter

        return SimulatedAdapter(
            scenario=settings.obd_sim_scenario,
            latency=settings.obd_sim_latency_s,
        )

    if settings.is_network:
        from obd_forensics.transport.tcp import TcpTransport

        return TcpTransport(settings.obd_port.strip())

    from obd_forensics.transport.serial import SerialTransport

    return SerialTransport(port=settings.obd_port, baudrate=settings.obd_baudrate)


async def run_command(
    settings: ForensicsSettings,
    command: str,
    *,
    once: bool = False,
    price_per_liter: float = 0.0,
    liters_added: float = 0.0,
    station_name: Optional[str] = None,
    fuel_context: FuelChangeContext = FuelChangeContext.UNKNOWN,
    discard_pending: bool = False,
    clear_codes: bool = False,
    freeze_frame: bool = False,
    transport: Optional[TransportChannel] = None,
) -> Any:
    """Run one CLI command to completion and return its result.

    Parameters
    ----------
    settings:
        Fully-resolved configuration.
    command:
        One of :data:`COMMANDS`.
    once:
        ``live`` only: take a single polling round.
    price_per_liter, liters_added, station_name, fuel_context:
        ``refuel`` purchase details; ``fuel_context`` also applies to
        ``quick-test``.
    discard_pending:
        ``refuel`` only: drop an interrupted session instead of resuming it.
    clear_codes, freeze_frame:
        ``dtc`` only: clear codes after reading them, and read freeze
        frame 0 first.
    transport:
        Byte channel to use instead of :func:`create_transport`.
    """
    handlers: Dict[str, Callable[..., Awaitable[Any]]] = {
        "live": _live,
        "probe": _probe,
        "dtc": _dtc,
        "crank": _crank,
        "drain": _drain,
        "quick-test": _quick_test,
        "refuel": _refuel,
    }
    if command not in handlers:
        raise ValueError(f"Unknown command: {command!r}")

    shutdown_event = asyncio.Event()

    # --- signal handling ---------------------------------------------------
    def _request_shutdown() -> None:
        logger.info("shutdown_requested")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    handled: List[signal.Signals] = []
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_shutdown)
            handled.append(sig)
    # On Windows, SIGINT is handled by the default KeyboardInterrupt.

    session = VehicleSession(transport or create_transport(settings), settings)
    poster = ResultPoster(settings)
    options = {
        "once": once,
        "price_per_liter": price_per_liter,
        "liters_added": liters_added,
        "station_name": station_name,
        "fuel_context": fuel_context,
        "discard_pending": discard_pending,
        "clear_codes": clear_codes,
        "freeze_frame": freeze_frame,
    }

    await poster.start()
    try:
        async with session:
            result = await handlers[command](session, settings, shutdown_event, **options)
        if result is not None and command in ("crank", "drain", "quick-test", "refuel"):
            try:
                await poster.post_result(result)
            except Exception:
                logger.exception("result_post_failed", command=command)
        return result
    finally:
        await poster.close()
        for sig in handled:
            loop.remove_signal_handler(sig)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

async def _live(
    session: VehicleSession,
    settings: ForensicsSettings,
    shutdown_event: asyncio.Event,
    *,
    once: bool,
    **_: Any,
) -> Dict[str, PidReading]:
    detector = FuelTypeDetector()
    tracker = FuelTypeChangeTracker()
    readings: Dict[str, PidReading] = {}
    while not shutdown_event.is_set():
        try:
            readings = await session.reader.read_many(LIVE_PIDS)
        except ForensicsError:
            logger.exception("live_poll_failed")
            if once:
                raise
        else:
            logger.info(
                "live_data",
                **{r.name: pids.get_definition(pid).format(r.value) for pid, r in readings.items()},
            )
            observe_fuel_type(readings, detector, tracker)
        if once:
            break
        await _interruptible_sleep(settings.live_poll_interval_s, shutdown_event)
    return readings


def observe_fuel_type(
    readings: Dict[str, PidReading],
    detector: FuelTypeDetector,
    tracker: Optional[FuelTypeChangeTracker] = None,
) -> Optional[FuelTypeVerdict]:
    """Feed one live polling round into *detector*.

    Returns ``None`` when either trim is missing or the ECU is not in
    closed loop.
    """
    stft, ltft = readings.get(PID_STFT), readings.get(PID_LTFT)
    if stft is None or ltft is None:
        return None
    status = readings.get(PID_FUEL_STATUS)
    verdict = detector.update(stft.value, ltft.value, status.value if status else None)
    if verdict is None:
        return None
    logger.info(
        "fuel_type_detected",
        fuel_type=verdict.inferred_type.value,
        confidence=verdict.confidence.value,
        ethanol_percent=verdict.estimated_ethanol_percent,
        samples=detector.sample_count,
    )
    if tracker is not None:
        tracker.observe(verdict, int(stft.ts.timestamp() * 1000))
    return verdict


async def _probe(
    session: VehicleSession,
    settings: ForensicsSettings,
    shutdown_event: asyncio.Event,
    **_: Any,
) -> Dict[str, Any]:
    supported = await session.reader.supported_pids()
    decodable = {pid: await session.reader.probe(pid) for pid in pids.PID_DEFINITIONS if pid in supported}
    vin = await session.reader.read_vin()
    voltage = await session.reader.read_voltage()
    logger.info(
        "vehicle_probed",
        adapter=session.adapter_version,
        vin=vin,
        supported=len(supported),
        decodable=sorted(p for p, ok in decodable.items() if ok),
        voltage=voltage,
    )
    return {
        "adapter": session.adapter_version,
        "vin": vin,
        "supported_pids": supported,
        "decodable": decodable,
        "voltage": voltage,
    }


async def _dtc(
    session: VehicleSession,
    settings: ForensicsSettings,
    shutdown_event: asyncio.Event,
    *,
    clear_codes: bool,
    freeze_frame: bool,
    **_: Any,
) -> DtcScanResult:
    found: Dict[DtcKind, List[DiagnosticTroubleCode]] = {}
    for kind in DtcKind:
        try:
            found[kind] = await session.reader.read_dtcs(kind)
        except NegativeResponse as exc:
            logger.warning("dtc_service_refused", kind=kind.value, nrc=exc.code, reason=exc.description)
            found[kind] = []

    # Mode 04 erases the freeze frame, so it is read first.
    frame = await session.reader.read_freeze_frame() if freeze_frame else None
    cleared = await session.reader.clear_dtcs() if clear_codes else None

    result = DtcScanResult(
        stored=tuple(found[DtcKind.STORED]),
        pending=tuple(found[DtcKind.PENDING]),
        permanent=tuple(found[DtcKind.PERMANENT]),
        freeze_frame=frame,
        cleared_ecus=cleared,
    )
    logger.info(
        "dtc_scan_complete",
        stored=[c.code for c in result.stored],
        pending=[c.code for c in result.pending],
        permanent=[c.code for c in result.permanent],
        freeze_frame=frame.trigger_dtc if frame else None,
        cleared_ecus=cleared,
    )
    return result


async def _crank(
    session: VehicleSession,
    settings: ForensicsSettings,
    shutdown_event: asyncio.Event,
    **_: Any,
) -> Any:
    logger.info("cranking_prompt", message="Start the engine now")
    return await run_cranking_test(
        session.reader,
        settings.cranking_settings(),
        stop_event=shutdown_event,
    )


async def _drain(
    session: VehicleSession,
    settings: ForensicsSettings,
    shutdown_event: asyncio.Event,
    **_: Any,
) -> Any:
    return await run_parasitic_draw(
        session.reader,
        settings.parasitic_settings(),
        wake_lock=create_wake_lock(settings.wake_lock_backend),
        stop_event=shutdown_event,
    )


async def _quick_test(
    session: VehicleSession,
    settings: ForensicsSettings,
    shutdown_event: asyncio.Event,
    *,
    fuel_context: FuelChangeContext,
    **_: Any,
) -> Any:
    machine = FuelAuditStateMachine()
    machine.start_quick_test(settings.refuel_settings())
    machine.confirm_quick_test(
        fuel_context if fuel_context != FuelChangeContext.UNKNOWN else FuelChangeContext.SAME_FUEL
    )
    monitor = _make_monitor(session, settings, machine)
    return await monitor.run(shutdown_event)


async def _refuel(
    session: VehicleSession,
    settings: ForensicsSettings,
    shutdown_event: asyncio.Event,
    *,
    price_per_liter: float,
    liters_added: float,
    station_name: Optional[str],
    fuel_context: FuelChangeContext,
    discard_pending: bool,
    **_: Any,
) -> Any:
    store = PendingSessionStore(settings.pending_session_path)
    machine = FuelAuditStateMachine()

    pending = store.load()
    if pending is not None and discard_pending:
        logger.info("pending_session_discarded", session_id=pending.session_id)
        store.clear()
        pending = None

    if pending is not None:
        machine.resume(pending)
        store.clear()
    else:
        fuel_level = await session.reader.read_value(PID_FUEL_LEVEL)
        machine.start_refuel(fuel_level, settings.refuel_settings())
        machine.confirm_refuel(
            price_per_liter,
            liters_added,
            station_name=station_name,
            fuel_context=fuel_context,
        )

    monitor = _make_monitor(session, settings, machine, store)
    return await monitor.run(shutdown_event)


def _make_monitor(
    session: VehicleSession,
    settings: ForensicsSettings,
    machine: FuelAuditStateMachine,
    store: Optional[PendingSessionStore] = None,
) -> RefuelMonitor:
    return RefuelMonitor(
        session.reader,
        machine,
        store or PendingSessionStore(settings.pending_session_path),
        tick_interval_s=settings.refuel_tick_interval_s,
        detector=FuelTypeDetector(),
        tracker=FuelTypeChangeTracker(),
    )


async def _interruptible_sleep(seconds: float, event: asyncio.Event) -> None:
    """Sleep for *seconds* but wake early if *event* is set."""
    try:
        await asyncio.wait_for(event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass
