"""Wi-Fi ELM327 adapters over TCP (asyncio streams)."""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from obd_forensics.errors import TransportError
from obd_forensics.transport.base import TransportChannel

logger = structlog.get_logger(__name__)

_READ_CHUNK = 1024


class TcpTransport(TransportChannel):
    """Connects to ``host:port`` (typically ``192.168.0.10:35000``)."""

    def __init__(self, address: str, connect_timeout: float = 5.0) -> None:
        super().__init__()
        host, _, port = address.rpartition(":")
        if not host or not port.isdigit():
            raise ValueError(f"Expected 'host:port', got '{address}'")
        self._host = host
        self._port = int(port)
        self._connect_timeout = connect_timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._open = False

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, self._port),
                timeout=self._connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as exc:
            raise TransportError(
                f"Cannot reach adapter at {self._host}:{self._port}: {exc}"
            ) from exc
        self._reader, self._writer = reader, writer
        self._open = True
        self._read_task = asyncio.create_task(self._read_loop(reader))
        logger.info("tcp_transport_opened", host=self._host, port=self._port)

    async def close(self) -> None:
        was_open = self._open
        self._open = False
        if self._read_task is not None:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError:
                logger.debug("tcp_close_error", exc_info=True)
            self._writer = None
        self._reader = None
        if was_open:
            logger.info("tcp_transport_closed", host=self._host, port=self._port)

    @property
    def is_open(self) -> bool:
        return self._open

    # -- I/O ----------------------------------------------------------------

    async def write(self, data: bytes) -> None:
        if not self._open or self._writer is None:
            raise TransportError("TCP transport is not open")
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as exc:
            self._drop(exc)
            raise TransportError(f"Write failed: {exc}") from exc

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                chunk = await reader.read(_READ_CHUNK)
                if not chunk:
                    self._drop(None)
                    return
                self._deliver(chunk)
        except OSError as exc:
            self._drop(exc)

    def _drop(self, exc: Optional[Exception]) -> None:
        if not self._open:
            return
        self._open = False
        logger.warning("tcp_transport_lost", host=self._host, error=str(exc) if exc else "eof")
        self._lost(exc)
