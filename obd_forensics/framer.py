"""ELM327 command/response framing.

The adapter is a half-duplex line device: a command goes out terminated
by ``\\r`` and the reply is every line received until the ``>`` prompt.
:class:`ProtocolFramer` enforces one command in flight; concurrent
callers queue FIFO on an ``asyncio.Lock`` and replies are matched to
commands purely by temporal order.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import structlog

from obd_forensics.errors import (
    AdapterError,
    ResponseTimeout,
    TransportError,
    UnsupportedPid,
)
from obd_forensics.frames import Message, find_payload, parse_lines
from obd_forensics.transport.base import TransportChannel

logger = structlog.get_logger(__name__)

PROMPT = ">"

# Status lines the adapter prints while it works; never part of a reply.
_STATUS_PREFIXES: Tuple[str, ...] = ("SEARCHING", "BUSINIT:...OK", "BUSINIT...OK")

_NO_DATA = "NODATA"

# Compacted (no whitespace) error tokens, matched as line prefixes.
_ERROR_TOKENS: Tuple[str, ...] = (
    "?",
    "ERROR",
    "CANERROR",
    "UNABLETOCONNECT",
    "BUSINIT",
    "BUSERROR",
    "BUSBUSY",
    "STOPPED",
    "BUFFERFULL",
    "DATAERROR",
    "<DATAERROR",
    "<RXERROR",
    "FBERROR",
    "LVRESET",
    "ACTALERT",
)


def _compact(line: str) -> str:
    return "".join(line.split()).upper()


@dataclass(frozen=True)
class Response:
    """Every line the adapter printed for one command, prompt excluded."""

    command: str
    lines: Tuple[str, ...]
    elapsed_s: float = 0.0
    headers: bool = False

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    def error_token(self) -> Optional[str]:
        """Return the first adapter error token in the reply, if any.

        ``NO DATA`` only counts when no other line carries data, since
        one ECU may stay silent while another answers.
        """
        data_lines = 0
        first_error: Optional[str] = None
        no_data: Optional[str] = None
        for line in self.lines:
            compact = _compact(line)
            if compact == _NO_DATA:
                no_data = no_data or line.strip()
            elif compact.startswith(_ERROR_TOKENS):
                first_error = first_error or line.strip()
            else:
                data_lines += 1
        if first_error is not None:
            return first_error
        if no_data is not None and data_lines == 0:
            return no_data
        return None

    def raise_for_error(self) -> None:
        """Raise :class:`AdapterError` / :class:`UnsupportedPid` for error replies."""
        token = self.error_token()
        if token is None:
            return
        if _compact(token) == _NO_DATA:
            raise UnsupportedPid(self.command, token)
        raise AdapterError(self.command, token)

    def messages(self) -> List[Message]:
        data = [line for line in self.lines if _compact(line) != _NO_DATA]
        return parse_lines(data, headers=self.headers)

    def payload(self, prefix: str) -> Optional[str]:
        """Data bytes (hex) following *prefix* in the first matching message."""
        self.raise_for_error()
        return find_payload(self.messages(), prefix)


@dataclass
class _PendingCommand:
    command: str
    future: "asyncio.Future[List[str]]"
    lines: List[str] = field(default_factory=list)
    echo_checked: bool = False


class ProtocolFramer:
    """Serialises commands over a :class:`TransportChannel`.

    Inbound bytes are pushed in by the transport through :meth:`feed`;
    :meth:`send` writes one command and waits for its prompt-terminated
    reply.
    """

    def __init__(
        self,
        transport: TransportChannel,
        *,
        default_timeout: float = 2.5,
        headers: bool = False,
    ) -> None:
        self._transport = transport
        self._default_timeout = default_timeout
        self.headers = headers
        self._lock = asyncio.Lock()
        self._buffer = ""
        self._pending: Optional[_PendingCommand] = None
        self._lost_listeners: List[Callable[[Optional[Exception]], None]] = []
        self._connection_lost = False
        transport.set_listeners(self.feed, self._on_connection_lost)

    # -- properties ---------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._pending is not None

    @property
    def connected(self) -> bool:
        return self._transport.is_open and not self._connection_lost

    def add_disconnect_listener(
        self, callback: Callable[[Optional[Exception]], None]
    ) -> None:
        self._lost_listeners.append(callback)

    # -- public API ---------------------------------------------------------

    async def send(self, command: str, timeout: Optional[float] = None) -> Response:
        """Send *command* and return its reply.

        Raises :class:`ResponseTimeout` when no prompt arrives within
        *timeout* (the slot is released either way) and
        :class:`TransportError` when the link is down or drops mid-reply.
        Retrying is the caller's decision.
        """
        timeout = self._default_timeout if timeout is None else timeout
        async with self._lock:
            if not self.connected:
                raise TransportError(f"Cannot send '{command}': transport is closed")

            loop = asyncio.get_running_loop()
            pending = _PendingCommand(command=command, future=loop.create_future())
            self._pending = pending
            self._buffer = ""
            started = loop.time()
            try:
                await self._transport.write(f"{command}\r".encode("ascii"))
                lines = await asyncio.wait_for(
                    asyncio.shield(pending.future), timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "command_timeout",
                    command=command,
                    timeout=timeout,
                    partial_lines=len(pending.lines),
                )
                raise ResponseTimeout(command, timeout, pending.lines) from None
            except asyncio.CancelledError:
                # Never leave a command unanswered for the next caller.
                remaining = max(0.0, started + timeout - loop.time())
                await asyncio.wait({pending.future}, timeout=remaining)
                raise
            finally:
                self._pending = None
                if pending.future.done():
                    if not pending.future.cancelled():
                        pending.future.exception()
                else:
                    pending.future.cancel()

            elapsed = loop.time() - started
            logger.debug(
                "command_completed",
                command=command,
                lines=len(lines),
                elapsed_ms=round(elapsed * 1000, 1),
            )
            return Response(
                command=command,
                lines=tuple(lines),
                elapsed_s=elapsed,
                headers=self.headers,
            )

    def feed(self, data: bytes) -> None:
        """Transport data callback: split inbound bytes into lines."""
        self._buffer += data.decode("ascii", errors="replace")
        while True:
            positions = [
                p for p in (self._buffer.find(c) for c in ("\r", "\n", PROMPT))
                if p >= 0
            ]
            if not positions:
                return
            pos = min(positions)
            line, sep = self._buffer[:pos], self._buffer[pos]
            self._buffer = self._buffer[pos + 1:]
            self._add_line(line)
            if sep == PROMPT:
                self._complete()

    # -- internal -----------------------------------------------------------

    def _add_line(self, raw: str) -> None:
        line = raw.strip()
        if not line:
            return
        pending = self._pending
        if pending is None or pending.future.done():
            logger.debug("stray_data_discarded", line=line)
            return
        compact = _compact(line)
        if not pending.echo_checked:
            pending.echo_checked = True
            if compact == _compact(pending.command):
                return
        if compact.startswith(_STATUS_PREFIXES):
            return
        pending.lines.append(line)

    def _complete(self) -> None:
        pending = self._pending
        if pending is None or pending.future.done():
            logger.debug("stray_prompt_discarded")
            return
        pending.future.set_result(list(pending.lines))

    def _on_connection_lost(self, exc: Optional[Exception]) -> None:
        self._connection_lost = True
        logger.warning("transport_lost", error=str(exc) if exc else None)
        pending = self._pending
        if pending is not None and not pending.future.done():
            pending.future.set_exception(
                TransportError(f"Connection lost while waiting for '{pending.command}'")
            )
        for callback in list(self._lost_listeners):
            callback(exc)
