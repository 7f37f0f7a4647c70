"""Tests for obd_forensics.transport.tcp against a local asyncio server."""

from __future__ import annotations

import asyncio

import pytest

from obd_forensics.errors import TransportError
from obd_forensics.transport.tcp import TcpTransport


async def _answer_once(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    await reader.readuntil(b"\r")
    writer.write(b"41 0D 3C\r\r>")
    await writer.drain()
    writer.close()


def test_address_must_have_port() -> None:
    with pytest.raises(ValueError):
        TcpTransport("192.168.0.10")


@pytest.mark.asyncio
async def test_reply_delivered_then_eof_reports_loss() -> None:
    server = await asyncio.start_server(_answer_once, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    received = bytearray()
    lost = asyncio.Event()

    transport = TcpTransport(f"127.0.0.1:{port}")
    transport.set_listeners(received.extend, lambda exc: lost.set())
    async with server:
        await transport.open()
        try:
            assert transport.is_open
            await transport.write(b"010D\r")
            await asyncio.wait_for(lost.wait(), timeout=2.0)
        finally:
            await transport.close()

    assert bytes(received) == b"41 0D 3C\r\r>"
    assert transport.is_open is False


@pytest.mark.asyncio
async def test_unreachable_adapter_raises_transport_error() -> None:
    server = await asyncio.start_server(_answer_once, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    transport = TcpTransport(f"127.0.0.1:{port}", connect_timeout=1.0)
    with pytest.raises(TransportError):
        await transport.open()
    with pytest.raises(TransportError):
        await transport.write(b"ATZ\r")
