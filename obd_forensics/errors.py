"""Exception taxonomy shared by the protocol layer and the analyses.

Callers distinguish *why* an operation failed by exception type:

* ``TransportError``    -- link lost or write failed.
* ``ResponseTimeout``   -- no prompt within the command timeout.
* ``AdapterError``      -- the adapter answered with an error token.
* ``UnsupportedPid``    -- the vehicle answered ``NO DATA``.
* ``MalformedResponse`` -- the reply could not be parsed.
* ``NegativeResponse``  -- an ECU refused the request (``7F``).
* ``InvalidTransition`` -- a state-machine operation in the wrong state.
* ``CaptureTimeout``    -- cranking was never detected.
"""

from __future__ import annotations

from typing import Optional, Sequence


class ForensicsError(Exception):
    """Base class for every error raised by ``obd_forensics``."""


class TransportError(ForensicsError):
    """The underlying byte channel failed (disconnect, write error)."""


class ResponseTimeout(ForensicsError, TimeoutError):
    """No terminating prompt arrived within the command timeout."""

    def __init__(
        self,
        command: str,
        timeout: float,
        partial: Sequence[str] = (),
    ) -> None:
        self.command = command
        self.timeout = timeout
        self.partial = tuple(partial)
        super().__init__(
            f"No response to '{command}' within {timeout:.2f}s"
            + (f" (partial: {' | '.join(self.partial)})" if self.partial else "")
        )


class AdapterError(ForensicsError):
    """The adapter reported an error token instead of data."""

    def __init__(self, command: str, token: str) -> None:
        self.command = command
        self.token = token
        super().__init__(f"Adapter answered '{token}' to '{command}'")


class UnsupportedPid(AdapterError):
    """The vehicle does not answer this identifier (``NO DATA``)."""


class MalformedResponse(ForensicsError):
    """A reply was received but its payload could not be parsed."""

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        self.raw = raw
        super().__init__(message if raw is None else f"{message}: {raw!r}")


class InsufficientData(MalformedResponse):
    """The payload carries fewer bytes than the PID formula needs."""

    def __init__(self, pid: str, needed: int, got: int) -> None:
        self.pid = pid
        self.needed = needed
        self.got = got
        super().__init__(
            f"PID {pid} needs {needed} data byte(s), got {got}"
        )


class NegativeResponse(ForensicsError):
    """An ECU refused a request with ``7F <service> <code>``."""

    def __init__(self, service: str, code: str, description: str) -> None:
        self.service = service
        self.code = code
        self.description = description
        super().__init__(f"Service {service} refused: {description} (0x{code})")


class InvalidTransition(ForensicsError):
    """A state-machine operation was requested in a state that forbids it."""

    def __init__(self, operation: str, state: str, reason: str = "") -> None:
        self.operation = operation
        self.state = state
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"Cannot {operation} while {state}{detail}")


class CaptureTimeout(ForensicsError, TimeoutError):
    """A battery capture never saw the event it was waiting for."""

    def __init__(self, what: str, waited_s: float) -> None:
        self.what = what
        self.waited_s = waited_s
        super().__init__(f"No {what} detected within {waited_s:.0f}s")
