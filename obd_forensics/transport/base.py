"""Abstract base class for adapter byte channels."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional

DataCallback = Callable[[bytes], None]
LostCallback = Callable[[Optional[Exception]], None]


class TransportChannel(ABC):
    """Bidirectional byte channel to an ELM327-style adapter.

    Inbound bytes are pushed to the ``on_data`` listener as they arrive;
    the ``on_lost`` listener fires once when the link drops.
    """

    def __init__(self) -> None:
        self._on_data: Optional[DataCallback] = None
        self._on_lost: Optional[LostCallback] = None

    def set_listeners(self, on_data: DataCallback, on_lost: LostCallback) -> None:
        self._on_data = on_data
        self._on_lost = on_lost

    @abstractmethod
    async def open(self) -> None:
        """Establish the link."""

    @abstractmethod
    async def close(self) -> None:
        """Close the link.  Closing an already closed channel is a no-op."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Send raw bytes.  Raises ``TransportError`` when the link is down."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Return ``True`` while the link is usable."""

    # -- helpers for subclasses ----------------------------------------------

    def _deliver(self, data: bytes) -> None:
        if self._on_data is not None and data:
            self._on_data(data)

    def _lost(self, exc: Optional[Exception] = None) -> None:
        if self._on_lost is not None:
            self._on_lost(exc)
