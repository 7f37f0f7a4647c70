"""Scoped system wake locks for long captures.

A wake lock is an async context manager: it is acquired on entry and
released on exit, whatever the exit path.  Backends:

* ``none``    -- :class:`NullWakeLock`, records state only.
* ``systemd`` -- :class:`SystemdInhibitWakeLock`, keeps a
  ``systemd-inhibit`` child alive for the duration of the scope.
"""

from __future__ import annotations

import asyncio
import shutil
from abc import ABC, abstractmethod
from typing import Optional

import structlog

logger = structlog.get_logger(__name__)


class WakeLock(ABC):
    """Prevents the host from sleeping while held."""

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    @abstractmethod
    async def acquire(self) -> None:
        ...

    @abstractmethod
    async def release(self) -> None:
        ...

    async def __aenter__(self) -> "WakeLock":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.release()


class NullWakeLock(WakeLock):
    """No-op backend; used in simulation and on hosts without a sleep manager."""

    async def acquire(self) -> None:
        self._held = True
        logger.debug("wake_lock_acquired", backend="none")

    async def release(self) -> None:
        if self._held:
            self._held = False
            logger.debug("wake_lock_released", backend="none")


class SystemdInhibitWakeLock(WakeLock):
    """Holds a ``systemd-inhibit --what=sleep:idle`` lock via a child process."""

    def __init__(self, reason: str = "Parasitic draw capture") -> None:
        super().__init__()
        self._reason = reason
        self._proc: Optional[asyncio.subprocess.Process] = None

    async def acquire(self) -> None:
        if self._held:
            return
        binary = shutil.which("systemd-inhibit")
        if binary is None:
            raise RuntimeError("systemd-inhibit not found on PATH")
        self._proc = await asyncio.create_subprocess_exec(
            binary,
            "--what=sleep:idle",
            "--who=obd_forensics",
            f"--why={self._reason}",
            "--mode=block",
            "sleep",
            "infinity",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        self._held = True
        logger.info("wake_lock_acquired", backend="systemd", pid=self._proc.pid)

    async def release(self) -> None:
        proc, self._proc = self._proc, None
        self._held = False
        if proc is None:
            return
        if proc.returncode is None:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        logger.info("wake_lock_released", backend="systemd")


def create_wake_lock(backend: str) -> WakeLock:
    """Factory keyed by the ``wake_lock_backend`` setting."""
    name = backend.strip().lower()
    if name in ("", "none"):
        return NullWakeLock()
    if name == "systemd":
        return SystemdInhibitWakeLock()
    raise ValueError(f"Unknown wake lock backend: {backend!r}")
