"""Tests for obd_forensics.session -- adapter initialisation lifecycle."""

from __future__ import annotations

import pytest

from obd_forensics.errors import AdapterError
from obd_forensics.session import VehicleSession
from obd_forensics.transport.simulation import SimulatedAdapter

_INIT_OK = {
    "ATZ": ["", "ELM327 v2.1"],
    "ATE0": ["OK"],
    "ATH0": ["OK"],
    "ATH1": ["OK"],
    "ATS1": ["OK"],
    "ATL0": ["OK"],
    "ATSP0": ["OK"],
}


@pytest.mark.asyncio
async def test_initialisation_sequence(make_transport, settings) -> None:
    transport = make_transport(_INIT_OK)
    async with VehicleSession(transport, settings) as session:
        assert session.connected
        assert session.adapter_version == "ELM327 v2.1"
    assert transport.commands == ["ATZ", "ATE0", "ATH0", "ATS1", "ATL0", "ATSP0"]
    assert not transport.is_open


@pytest.mark.asyncio
async def test_headers_setting_sends_ath1(make_transport, settings) -> None:
    transport = make_transport(_INIT_OK)
    settings.obd_headers = True
    session = VehicleSession(transport, settings)
    await session.open()
    try:
        assert "ATH1" in transport.commands
        assert session.framer.headers is True
    finally:
        await session.close()


@pytest.mark.asyncio
async def test_failed_init_closes_transport(make_transport, settings) -> None:
    replies = dict(_INIT_OK, ATE0=["?"])
    transport = make_transport(replies)
    session = VehicleSession(transport, settings)
    with pytest.raises(AdapterError):
        await session.open()
    assert not transport.is_open


@pytest.mark.asyncio
async def test_simulated_adapter_session_reads(settings) -> None:
    adapter = SimulatedAdapter("healthy", noise=False)
    async with VehicleSession(adapter, settings) as session:
        assert adapter.echo is False
        speed = await session.reader.read_value("0D")
        assert speed == pytest.approx(60.0)
        assert await session.reader.read_vin() == "1HGCM82633A004352"


@pytest.mark.asyncio
async def test_disconnect_listener_notified(settings) -> None:
    adapter = SimulatedAdapter("healthy", noise=False)
    seen = []
    session = VehicleSession(adapter, settings)
    session.on_disconnect(seen.append)
    await session.open()
    adapter.force_disconnect()
    assert seen == [None]
    assert not session.connected
    await session.close()
