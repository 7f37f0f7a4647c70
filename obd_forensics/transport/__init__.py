"""Byte-channel abstraction layer.

Provides ``TransportChannel`` ABC with three concrete implementations:

* ``SimulatedAdapter``  -- ELM327 emulator driven by JSON scenarios.
* ``TcpTransport``      -- Wi-Fi adapters (asyncio streams).
* ``SerialTransport``   -- pyserial device, lazy-imported.
"""

from obd_forensics.transport.base import TransportChannel

__all__ = ["TransportChannel"]
