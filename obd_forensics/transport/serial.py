"""Serial / Bluetooth-SPP adapters via pyserial.

pyserial is blocking, so every call is offloaded with
``asyncio.to_thread``.  A reader task polls ``in_waiting`` and pushes
whatever arrived to the data listener.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from obd_forensics.errors import TransportError
from obd_forensics.transport.base import TransportChannel

logger = structlog.get_logger(__name__)

_POLL_TIMEOUT_S = 0.05


class SerialTransport(TransportChannel):
    """Wraps ``serial.Serial`` for ``/dev/rfcomm0``, ``/dev/ttyUSB0``, ``COM3``..."""

    def __init__(self, port: str, baudrate: int = 38400) -> None:
        super().__init__()
        self._port = port
        self._baudrate = baudrate
        self._serial: Any = None  # serial.Serial instance
        self._read_task: Optional[asyncio.Task] = None
        self._open = False

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        import serial

        try:
            self._serial = await asyncio.to_thread(
                serial.Serial,
                port=self._port,
                baudrate=self._baudrate,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                timeout=_POLL_TIMEOUT_S,
            )
        except serial.SerialException as exc:
            raise TransportError(f"Cannot open {self._port}: {exc}") from exc
        self._open = True
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info("serial_transport_opened", port=self._port, baudrate=self._baudrate)

    async def close(self) -> None:
        self._open = False
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        if self._serial is not None:
            await asyncio.to_thread(self._serial.close)
            self._serial = None
            logger.info("serial_transport_closed", port=self._port)

    @property
    def is_open(self) -> bool:
        return self._open

    # -- I/O ----------------------------------------------------------------

    async def write(self, data: bytes) -> None:
        import serial

        if not self._open or self._serial is None:
            raise TransportError("Serial transport is not open")
        try:
            await asyncio.to_thread(self._serial.write, data)
        except serial.SerialException as exc:
            self._drop(exc)
            raise TransportError(f"Write failed: {exc}") from exc

    async def _read_loop(self) -> None:
        import serial

        try:
            while self._open:
                chunk = await asyncio.to_thread(self._read_available)
                self._deliver(chunk)
        except (serial.SerialException, OSError) as exc:
            self._drop(exc)

    def _read_available(self) -> bytes:
        # Blocks at most _POLL_TIMEOUT_S when nothing is waiting.
        return self._serial.read(self._serial.in_waiting or 1)

    def _drop(self, exc: Optional[Exception]) -> None:
        if not self._open:
            return
        self._open = False
        logger.warning("serial_transport_lost", port=self._port, error=str(exc))
        self._lost(exc)
