"""Per-channel hysteresis timers driven by sample timestamps.

A timer measures how long a boolean condition (e.g. ``|STFT| >= 15``)
has held *continuously*.  Time comes from the samples themselves, never
from the wall clock, so the same sample sequence always yields the same
result.  Any sample where the condition is false resets the run.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class TimerState(str, Enum):
    CLEAR = "clear"
    PENDING = "pending"
    ACTIVE = "active"
    ESCALATED = "escalated"


class HysteresisTimer:
    """Condition-held timer with a hold and an optional escalation level.

    Parameters
    ----------
    hold_s:
        Seconds the condition must hold before the timer is ``ACTIVE``.
    escalate_s:
        Seconds after which the timer is ``ESCALATED``.  ``None`` disables.
    max_held_s:
        Longest run already observed, when restoring a timer.
    """

    def __init__(
        self,
        hold_s: float,
        escalate_s: Optional[float] = None,
        *,
        max_held_s: float = 0.0,
    ) -> None:
        if hold_s < 0:
            raise ValueError(f"hold_s must be >= 0, got {hold_s}")
        self.hold_s = hold_s
        self.escalate_s = escalate_s
        self._since_ms: Optional[int] = None
        self._last_ms: Optional[int] = None
        self._held_s = 0.0
        self._max_held_s = max_held_s
        self._state = TimerState.CLEAR

    # -- properties ---------------------------------------------------------

    @property
    def state(self) -> TimerState:
        return self._state

    @property
    def held_s(self) -> float:
        """Duration of the current run (0 when clear)."""
        return self._held_s

    @property
    def max_held_s(self) -> float:
        """Longest continuous run seen since the last :meth:`reset`."""
        return self._max_held_s

    @property
    def fired(self) -> bool:
        """True once any run has reached ``hold_s``."""
        return self._max_held_s >= self.hold_s and self._max_held_s > 0

    @property
    def escalated(self) -> bool:
        return self.escalate_s is not None and self._max_held_s >= self.escalate_s

    # -- updates ------------------------------------------------------------

    def update(self, condition: bool, timestamp_ms: int) -> TimerState:
        """Feed one sample and return the resulting state."""
        if self._last_ms is not None and timestamp_ms < self._last_ms:
            raise ValueError(
                f"Timestamps must not go backwards ({timestamp_ms} < {self._last_ms})"
            )
        self._last_ms = timestamp_ms

        if not condition:
            self._since_ms = None
            self._held_s = 0.0
            self._state = TimerState.CLEAR
            return self._state

        if self._since_ms is None:
            self._since_ms = timestamp_ms
        self._held_s = (timestamp_ms - self._since_ms) / 1000.0
        self._max_held_s = max(self._max_held_s, self._held_s)

        if self.escalate_s is not None and self._held_s >= self.escalate_s:
            self._state = TimerState.ESCALATED
        elif self._held_s >= self.hold_s:
            self._state = TimerState.ACTIVE
        else:
            self._state = TimerState.PENDING
        return self._state

    def interrupt(self) -> None:
        """Break the current run without forgetting the longest one."""
        self._since_ms = None
        self._last_ms = None
        self._held_s = 0.0
        self._state = TimerState.CLEAR

    def reset(self) -> None:
        self.interrupt()
        self._max_held_s = 0.0


class Cooldown:
    """Rate limiter: at most one event per *period_s*, on sample time."""

    def __init__(self, period_s: float) -> None:
        self.period_s = period_s
        self._last_ms: Optional[int] = None

    def ready(self, timestamp_ms: int) -> bool:
        return self._last_ms is None or (timestamp_ms - self._last_ms) >= self.period_s * 1000

    def mark(self, timestamp_ms: int) -> None:
        self._last_ms = timestamp_ms

    def reset(self) -> None:
        self._last_ms = None
