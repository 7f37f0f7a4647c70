"""Explicitly owned adapter session.

A :class:`VehicleSession` owns one transport, the framer on top of it
and the PID reader, and runs the ELM327 initialisation sequence.  Every
analysis receives the session it should use; nothing is global.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog

from obd_forensics.config import ForensicsSettings
from obd_forensics.framer import ProtocolFramer
from obd_forensics.live_data import LivePidReader
from obd_forensics.transport.base import TransportChannel

logger = structlog.get_logger(__name__)


class VehicleSession:
    """Open/close lifecycle around a transport plus framer plus reader."""

    def __init__(self, transport: TransportChannel, settings: ForensicsSettings) -> None:
        self._settings = settings
        self.transport = transport
        self.framer = ProtocolFramer(
            transport,
            default_timeout=settings.command_timeout_s,
            headers=settings.obd_headers,
        )
        self.reader = LivePidReader(
            self.framer,
            timeout=settings.command_timeout_s,
            attempts=settings.max_retry_attempts,
            initial_delay=settings.retry_initial_delay_s,
            max_delay=settings.retry_max_delay_s,
        )
        self.adapter_version: Optional[str] = None

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        await self.transport.open()
        try:
            await self._initialise()
        except BaseException:
            await self.transport.close()
            raise
        logger.info(
            "session_opened",
            adapter=self.adapter_version,
            headers=self._settings.obd_headers,
        )

    async def close(self) -> None:
        await self.transport.close()
        logger.info("session_closed")

    async def __aenter__(self) -> "VehicleSession":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def connected(self) -> bool:
        return self.framer.connected

    def on_disconnect(self, callback: Callable[[Optional[Exception]], None]) -> None:
        self.framer.add_disconnect_listener(callback)

    # -- internal -----------------------------------------------------------

    async def _initialise(self) -> None:
        reset = await self.framer.send("ATZ", timeout=self._settings.reset_timeout_s)
        reset.raise_for_error()
        if reset.lines:
            self.adapter_version = reset.lines[-1]
        if self._settings.reset_settle_s:
            await asyncio.sleep(self._settings.reset_settle_s)

        headers = "ATH1" if self._settings.obd_headers else "ATH0"
        for command in ("ATE0", headers, "ATS1", "ATL0", "ATSP0"):
            response = await self.framer.send(command)
            response.raise_for_error()
            logger.debug("adapter_configured", command=command)
