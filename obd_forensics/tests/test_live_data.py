"""Tests for obd_forensics.live_data -- reads, probe cache, voltage."""

from __future__ import annotations

import pytest

from obd_forensics.errors import MalformedResponse, ResponseTimeout, UnsupportedPid
from obd_forensics.framer import ProtocolFramer
from obd_forensics.live_data import LivePidReader


async def _reader(transport, *, timeout: float = 0.5, attempts: int = 2) -> LivePidReader:
    framer = ProtocolFramer(transport, default_timeout=timeout)
    await transport.open()
    return LivePidReader(framer, timeout=timeout, attempts=attempts, initial_delay=0.0)


@pytest.mark.asyncio
async def test_read_decodes_value(make_transport) -> None:
    reader = await _reader(make_transport({"010C": ["41 0C 1A F8"]}))
    reading = await reader.read("0c")
    assert reading.pid == "0C"
    assert reading.value == pytest.approx(1726.0)


@pytest.mark.asyncio
async def test_read_unknown_definition_rejected(make_transport) -> None:
    reader = await _reader(make_transport())
    with pytest.raises(ValueError):
        await reader.read("FE")


@pytest.mark.asyncio
async def test_read_no_data_raises_unsupported(make_transport) -> None:
    reader = await _reader(make_transport())
    with pytest.raises(UnsupportedPid):
        await reader.read("52")


@pytest.mark.asyncio
async def test_read_value_none_when_unsupported(make_transport) -> None:
    reader = await _reader(make_transport())
    assert await reader.read_value("52") is None


@pytest.mark.asyncio
async def test_reply_for_other_pid_is_malformed(make_transport) -> None:
    reader = await _reader(make_transport({"010C": ["41 0D 3C"]}))
    with pytest.raises(MalformedResponse):
        await reader.read("0C")


@pytest.mark.asyncio
async def test_timeouts_retried_then_surface(make_transport) -> None:
    transport = make_transport({"010C": None})
    reader = await _reader(transport, timeout=0.02, attempts=3)
    with pytest.raises(ResponseTimeout):
        await reader.read("0C")
    assert transport.commands == ["010C", "010C", "010C"]


@pytest.mark.asyncio
async def test_probe_negative_result_cached(make_transport) -> None:
    transport = make_transport()
    reader = await _reader(transport)
    assert await reader.probe("52") is False
    assert await reader.probe("52") is False
    assert transport.commands == ["0152"]


@pytest.mark.asyncio
async def test_probe_short_reply_counts_as_supported(make_transport) -> None:
    transport = make_transport({"010C": ["41 0C 1A"]})
    reader = await _reader(transport)
    assert await reader.probe("0C") is True
    assert await reader.probe("0C") is True
    assert transport.commands == ["010C"]


@pytest.mark.asyncio
async def test_probe_timeout_not_cached(make_transport) -> None:
    transport = make_transport({"010D": None})
    reader = await _reader(transport, timeout=0.02, attempts=1)
    with pytest.raises(ResponseTimeout):
        await reader.probe("0D")
    transport.replies["010D"] = ["41 0D 3C"]
    assert await reader.probe("0D") is True


@pytest.mark.asyncio
async def test_forget_clears_probe_cache(make_transport) -> None:
    transport = make_transport()
    reader = await _reader(transport)
    await reader.probe("52")
    reader.forget()
    transport.replies["0152"] = ["41 52 40"]
    assert await reader.probe("52") is True


@pytest.mark.asyncio
async def test_supported_pids_walks_bitmaps(make_transport) -> None:
    transport = make_transport(
        {
            "0100": ["41 00 18 18 00 01"],
            "0120": ["41 20 00 02 00 01"],
            "0140": ["41 40 40 00 00 00"],
        }
    )
    reader = await _reader(transport)
    supported = await reader.supported_pids()
    assert supported == ["04", "05", "0C", "0D", "2F", "42"]
    await reader.supported_pids()
    assert transport.commands == ["0100", "0120", "0140"]


@pytest.mark.asyncio
async def test_read_voltage_prefers_pid_42(make_transport) -> None:
    transport = make_transport({"0142": ["41 42 31 2A"], "ATRV": ["12.1V"]})
    reader = await _reader(transport)
    assert await reader.read_voltage() == pytest.approx(12.586)


@pytest.mark.asyncio
async def test_read_voltage_falls_back_to_atrv(make_transport) -> None:
    transport = make_transport({"ATRV": ["12.1V"]})
    reader = await _reader(transport)
    assert await reader.read_voltage() == pytest.approx(12.1)
    assert await reader.read_voltage() == pytest.approx(12.1)
    assert transport.commands == ["0142", "ATRV", "ATRV"]


@pytest.mark.asyncio
async def test_read_vin_multiframe(make_transport) -> None:
    transport = make_transport(
        {
            "0902": [
                "014",
                "0: 49 02 01 31 48 47",
                "1: 43 4D 38 32 36 33 33",
                "2: 41 30 30 34 33 35 32",
            ]
        }
    )
    reader = await _reader(transport)
    assert await reader.read_vin() == "1HGCM82633A004352"


@pytest.mark.asyncio
async def test_read_vin_unsupported(make_transport) -> None:
    reader = await _reader(make_transport())
    assert await reader.read_vin() is None
