"""Tests for obd_forensics.framer -- one command in flight, FIFO replies."""

from __future__ import annotations

import asyncio

import pytest

from obd_forensics.errors import AdapterError, ResponseTimeout, TransportError, UnsupportedPid
from obd_forensics.framer import ProtocolFramer, Response


async def _open(transport, **kwargs) -> ProtocolFramer:
    framer = ProtocolFramer(transport, default_timeout=kwargs.pop("timeout", 0.5), **kwargs)
    await transport.open()
    return framer


# ===================================================================
# Response parsing
# ===================================================================


class TestResponse:
    def test_no_data_raises_unsupported(self) -> None:
        response = Response("0152", ("NO DATA",))
        with pytest.raises(UnsupportedPid):
            response.payload("4152")

    def test_no_data_ignored_when_another_ecu_answers(self) -> None:
        response = Response("010D", ("NO DATA", "41 0D 3C"))
        assert response.error_token() is None
        assert response.payload("410D") == "3C"

    def test_error_token_raises_adapter_error(self) -> None:
        response = Response("010D", ("CAN ERROR",))
        with pytest.raises(AdapterError) as exc_info:
            response.raise_for_error()
        assert not isinstance(exc_info.value, UnsupportedPid)
        assert exc_info.value.token == "CAN ERROR"

    def test_question_mark_is_an_error(self) -> None:
        assert Response("ATXX", ("?",)).error_token() == "?"

    def test_payload_absent_for_other_pid(self) -> None:
        assert Response("010C", ("41 0D 3C",)).payload("410C") is None

    def test_headered_reply_decoded_with_headers_off(self) -> None:
        response = Response("010D", ("7E8 03 41 0D 32",), headers=False)
        assert response.payload("410D") == "32"


# ===================================================================
# Framer
# ===================================================================


class TestProtocolFramer:
    @pytest.mark.asyncio
    async def test_reply_reassembled_from_chunks(self, make_transport) -> None:
        transport = make_transport({"010C": ["41 0C 1A F8"]}, echo=True, chunk_size=3)
        framer = await _open(transport)
        response = await framer.send("010C")
        assert response.lines == ("41 0C 1A F8",)
        assert response.payload("410C") == "1AF8"
        assert not framer.busy

    @pytest.mark.asyncio
    async def test_status_lines_dropped(self, make_transport) -> None:
        transport = make_transport({"0100": ["SEARCHING...", "41 00 BE 1F A8 13"]})
        framer = await _open(transport)
        response = await framer.send("0100")
        assert response.lines == ("41 00 BE 1F A8 13",)

    @pytest.mark.asyncio
    async def test_timeout_carries_partial_and_frees_slot(self, make_transport) -> None:
        transport = make_transport({"0114": None, "010D": ["41 0D 3C"]})
        framer = await _open(transport, timeout=0.05)
        with pytest.raises(ResponseTimeout) as exc_info:
            await framer.send("0114")
        assert exc_info.value.command == "0114"
        assert isinstance(exc_info.value, TimeoutError)
        assert not framer.busy
        response = await framer.send("010D")
        assert response.payload("410D") == "3C"

    @pytest.mark.asyncio
    async def test_concurrent_callers_served_fifo_one_at_a_time(self, make_transport) -> None:
        transport = make_transport(
            {
                "010C": ["41 0C 1A F8"],
                "010D": ["41 0D 3C"],
                "0105": ["41 05 7B"],
            },
            delay=0.01,
        )
        framer = await _open(transport)
        results = await asyncio.gather(
            framer.send("010C"),
            framer.send("010D"),
            framer.send("0105"),
        )
        assert transport.commands == ["010C", "010D", "0105"]
        assert transport.max_in_flight == 1
        assert [r.command for r in results] == ["010C", "010D", "0105"]
        assert results[1].payload("410D") == "3C"

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_leak_reply(self, make_transport) -> None:
        transport = make_transport(
            {"010D": ["41 0D 3C"], "010C": ["41 0C 1A F8"]},
            delay=0.05,
        )
        framer = await _open(transport)
        task = asyncio.create_task(framer.send("010D"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        response = await framer.send("010C")
        assert response.payload("410C") == "1AF8"

    @pytest.mark.asyncio
    async def test_send_on_closed_transport_raises(self, make_transport) -> None:
        transport = make_transport()
        framer = ProtocolFramer(transport)
        with pytest.raises(TransportError):
            await framer.send("010D")

    @pytest.mark.asyncio
    async def test_connection_lost_fails_pending_command(self, make_transport) -> None:
        transport = make_transport({"010D": None})
        framer = await _open(transport, timeout=1.0)
        lost = []
        framer.add_disconnect_listener(lost.append)
        task = asyncio.create_task(framer.send("010D"))
        await asyncio.sleep(0.01)
        transport.drop()
        with pytest.raises(TransportError):
            await task
        assert lost == [None]
        assert not framer.connected
