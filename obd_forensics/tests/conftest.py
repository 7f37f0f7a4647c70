"""Shared pytest fixtures for OBD forensics tests."""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Generator, List, Optional

import pytest

from obd_forensics.config import ForensicsSettings
from obd_forensics.errors import TransportError
from obd_forensics.transport.base import TransportChannel


class ScriptedTransport(TransportChannel):
    """In-memory adapter answering from a ``command -> reply`` table.

    A reply is a list of lines, a callable returning one (or ``None``),
    or ``None`` for a command the adapter never answers.  Unlisted
    commands get ``NO DATA``.  Replies arrive on the next loop iteration
    (or after *delay*), split into *chunk_size* pieces.
    """

    def __init__(
        self,
        replies: Optional[Dict[str, Any]] = None,
        *,
        echo: bool = False,
        delay: float = 0.0,
        chunk_size: int = 0,
    ) -> None:
        super().__init__()
        self.replies: Dict[str, Any] = dict(replies or {})
        self.echo = echo
        self.delay = delay
        self.chunk_size = chunk_size
        self.commands: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._open = False

    async def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def drop(self) -> None:
        self._open = False
        self._lost(None)

    async def write(self, data: bytes) -> None:
        if not self._open:
            raise TransportError("scripted transport closed")
        command = data.decode("ascii").strip()
        self.commands.append(command)
        reply = self.replies.get(command, ["NO DATA"])
        if callable(reply):
            reply = reply(command)
        if reply is None:
            return
        lines = ([command] if self.echo else []) + list(reply)
        payload = ("\r".join(lines) + "\r\r>").encode("ascii")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        asyncio.get_running_loop().call_later(self.delay, self._respond, payload)

    def _respond(self, payload: bytes) -> None:
        self.in_flight -= 1
        if not self._open:
            return
        size = self.chunk_size or len(payload)
        for i in range(0, len(payload), size):
            self._deliver(payload[i:i + size])


@pytest.fixture(autouse=True)
def _reset_scenario_cache() -> Generator[None, None, None]:
    """Clear the simulation scenario cache between tests."""
    from obd_forensics.transport import simulation

    simulation._scenarios_cache = None
    yield
    simulation._scenarios_cache = None


@pytest.fixture()
def make_transport() -> Callable[..., ScriptedTransport]:
    return ScriptedTransport


@pytest.fixture()
def settings(tmp_path) -> ForensicsSettings:
    """Simulation settings with no pauses and a temp pending-session file."""
    return ForensicsSettings(
        obd_port="sim",
        reset_settle_s=0.0,
        command_timeout_s=0.5,
        retry_initial_delay_s=0.0,
        retry_max_delay_s=0.0,
        pending_session_path=str(tmp_path / "pending.json"),
        dry_run=True,
    )
