"""Fixture-driven ELM327 emulator (no hardware required).

Loads scenarios from ``fixtures/simulation_scenarios.json`` and answers
AT, Mode 01, trouble-code (03, 07, 0A, 04) and freeze-frame (02)
commands the way a real adapter does: command echo,
optional CAN headers, ``NO DATA`` for unsupported PIDs and the ``>``
prompt.  Replies are pushed back in small chunks so the framer's line
reassembly is exercised exactly as with a Bluetooth link.

PID values come either from a ``base`` value or a time ``profile`` of
``[elapsed_ms, value]`` points (linearly interpolated), with optional
Gaussian noise.
"""

from __future__ import annotations

import asyncio
import json
import random
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from obd_forensics import dtc, pids
from obd_forensics.errors import TransportError
from obd_forensics.transport.base import TransportChannel

logger = structlog.get_logger(__name__)

_FIXTURES_DIR = Path(__file__).resolve().parent.parent / "fixtures"

_ECU_HEADER = "7E8"
_DEFAULT_VERSION = "ELM327 v1.5"
_HEX_DIGITS = "0123456789ABCDEF"
_KIND_BY_SERVICE = {service: kind.value for kind, service in dtc.DTC_SERVICES.items()}


class SimulatedAdapter(TransportChannel):
    """In-process ELM327 driven by a named scenario."""

    def __init__(
        self,
        scenario: str = "healthy",
        *,
        latency: float = 0.0,
        noise: bool = True,
        chunk_size: int = 8,
        clock: Optional[Callable[[], float]] = None,
        scenarios: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__()
        self._scenario_name = scenario
        self._scenarios = scenarios
        self._scenario: Dict[str, Any] = {}
        self._latency = latency
        self._noise = noise
        self._chunk_size = max(1, chunk_size)
        self._clock = clock or time.monotonic
        self._t0 = 0.0
        self._open = False
        self._tasks: List[asyncio.Task] = []
        self._obd_commands = 0
        self._dtcs: Dict[str, List[str]] = {}
        self._freeze_frame: Optional[Dict[str, Any]] = None
        self._reset_flags()
        self.commands: List[str] = []

    def _reset_flags(self) -> None:
        self.echo = True
        self.headers = False
        self.spaces = True
        self.linefeeds = False

    # -- lifecycle ----------------------------------------------------------

    async def open(self) -> None:
        scenarios = self._scenarios if self._scenarios is not None else _load_scenarios()
        if self._scenario_name not in scenarios:
            available = ", ".join(sorted(scenarios))
            raise ValueError(
                f"Unknown simulation scenario '{self._scenario_name}'. "
                f"Available: {available}"
            )
        self._scenario = scenarios[self._scenario_name]
        self._reset_flags()
        self._obd_commands = 0
        self._dtcs = {
            kind: list(codes) for kind, codes in self._scenario.get("dtcs", {}).items()
        }
        self._freeze_frame = self._scenario.get("freeze_frame")
        self._t0 = self._clock()
        self._open = True

    async def close(self) -> None:
        self._open = False
        for task in self._tasks:
            task.cancel()
        self._tasks.clear()

    @property
    def is_open(self) -> bool:
        return self._open

    def force_disconnect(self) -> None:
        """Drop the link as if the adapter lost power."""
        if self._open:
            self._open = False
            logger.info("simulated_disconnect", scenario=self._scenario_name)
            self._lost(None)

    # -- I/O ----------------------------------------------------------------

    async def write(self, data: bytes) -> None:
        if not self._open:
            raise TransportError("Simulated adapter is not open")
        text = data.decode("ascii", errors="replace")
        for command in (c.strip() for c in text.split("\r")):
            if not command:
                continue
            self.commands.append(command)
            reply = self._handle(command)
            if not self._open:
                return
            if reply is None:
                continue
            lines = ([command] if self.echo else []) + reply
            eol = "\r\n" if self.linefeeds else "\r"
            payload = eol.join(lines) + eol + eol + ">"
            self._tasks = [t for t in self._tasks if not t.done()]
            self._tasks.append(asyncio.create_task(self._emit(payload)))

    async def _emit(self, payload: str) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        raw = payload.encode("ascii")
        for i in range(0, len(raw), self._chunk_size):
            if not self._open:
                return
            self._deliver(raw[i:i + self._chunk_size])
            await asyncio.sleep(0)

    # -- command handling ---------------------------------------------------

    def _elapsed_ms(self) -> float:
        return (self._clock() - self._t0) * 1000.0

    def _handle(self, command: str) -> Optional[List[str]]:
        cmd = "".join(command.split()).upper()
        if cmd.startswith("AT"):
            return self._handle_at(cmd[2:])

        self._obd_commands += 1
        limit = self._scenario.get("disconnect_after")
        if limit is not None and self._obd_commands > limit:
            self.force_disconnect()
            return None

        if not all(c in _HEX_DIGITS for c in cmd):
            return ["?"]
        if cmd in _KIND_BY_SERVICE:
            return self._handle_dtcs(cmd)
        if cmd == dtc.CLEAR_SERVICE:
            return self._handle_clear()
        if len(cmd) == 6 and cmd.startswith(dtc.FREEZE_FRAME_SERVICE):
            return self._handle_freeze_frame(cmd[2:4], cmd[4:])
        if len(cmd) != 4:
            return ["?"]
        mode, pid = cmd[:2], cmd[2:]
        if mode == "01":
            return self._handle_mode01(pid)
        if mode == "09" and pid == "02" and "vin" in self._scenario:
            return self._vin_lines(self._scenario["vin"])
        return ["NO DATA"]

    def _handle_at(self, at: str) -> Optional[List[str]]:
        if at == "Z":
            self._reset_flags()
            return ["", _DEFAULT_VERSION]
        if at == "I":
            return [self._scenario.get("elm_version", _DEFAULT_VERSION)]
        if at == "RV":
            volts = self._battery_volts()
            return [f"{volts:.1f}V"]
        if at == "DPN":
            return ["A6"]
        flags = {"E": "echo", "H": "headers", "S": "spaces", "L": "linefeeds"}
        if len(at) == 2 and at[0] in flags and at[1] in "01":
            setattr(self, flags[at[0]], at[1] == "1")
            return ["OK"]
        if at.startswith(("SP", "TP", "AT", "ST", "D", "CAF", "M")):
            return ["OK"]
        return ["?"]

    def _handle_mode01(self, pid: str) -> Optional[List[str]]:
        scenario_pids: Dict[str, Any] = self._scenario.get("pids", {})
        if pid in self._scenario.get("silent_pids", []):
            return None
        if pid in pids.SUPPORT_BITMAP_PIDS:
            supported = self._supported()
            base = int(pid, 16)
            if pid != "00" and not any(base < int(p, 16) <= base + 32 for p in supported):
                return ["NO DATA"]
            return [self._frame(f"41 {pid} {pids.bitmap_for(pid, supported)}")]
        spec = scenario_pids.get(pid)
        if spec is None:
            return ["NO DATA"]
        if "raw" in spec:
            return [self._frame(spec["raw"])]
        if spec.get("source") == "battery":
            value = self._battery_volts()
        else:
            value = self._value(spec)
        return [self._frame(f"41 {pid} {pids.encode(pid, value)}")]

    def _supported(self) -> List[str]:
        listed = sorted(self._scenario.get("pids", {}))
        # Advertise the next bitmap PID whenever something beyond it is supported.
        extra = [
            b for b in pids.SUPPORT_BITMAP_PIDS[1:]
            if any(int(p, 16) > int(b, 16) for p in listed)
        ]
        return listed + extra

    def _frame(self, data: str) -> str:
        body = data if self.spaces else data.replace(" ", "")
        if not self.headers:
            return body
        n_bytes = len(data.replace(" ", "")) // 2
        sep = " " if self.spaces else ""
        return sep.join([_ECU_HEADER, f"{n_bytes:02X}", body])

    def _handle_dtcs(self, service: str) -> List[str]:
        codes = self._dtcs.get(_KIND_BY_SERVICE[service], [])
        data = [int(dtc.response_service(service), 16), len(codes)]
        for code in codes:
            data.extend(bytes.fromhex(dtc.encode_dtc(code)))
        return self._data_lines(data)

    def _handle_clear(self) -> List[str]:
        # Permanent codes survive a Mode 04 clear.
        self._dtcs["stored"] = []
        self._dtcs["pending"] = []
        self._freeze_frame = None
        logger.info("simulated_dtcs_cleared", scenario=self._scenario_name)
        return [self._frame("44")]

    def _handle_freeze_frame(self, pid: str, frame: str) -> List[str]:
        if self._freeze_frame is None or frame != "00":
            return ["NO DATA"]
        if pid == dtc.FREEZE_FRAME_DTC_PID:
            raw = dtc.encode_dtc(self._freeze_frame["dtc"])
            return [self._frame(f"42 {pid} {frame} {raw[:2]} {raw[2:]}")]
        value = self._freeze_frame.get("pids", {}).get(pid)
        if value is None or pids.get_definition(pid) is None:
            return ["NO DATA"]
        return [self._frame(f"42 {pid} {frame} {pids.encode(pid, value)}")]

    def _vin_lines(self, vin: str) -> List[str]:
        return self._data_lines([0x49, 0x02, 0x01] + [ord(c) for c in vin])

    def _data_lines(self, data: Sequence[int]) -> List[str]:
        """Reply lines for *data*; more than 7 bytes need ISO-TP frames."""
        sep = " " if self.spaces else ""

        def hexs(chunk: Sequence[int]) -> str:
            return sep.join(f"{b:02X}" for b in chunk)

        if len(data) <= 7:
            return [self._frame(" ".join(f"{b:02X}" for b in data))]

        if self.headers:
            lines = [sep.join([_ECU_HEADER, f"10{sep}{len(data):02X}", hexs(data[:6])])]
            rest, seq = data[6:], 1
            while rest:
                lines.append(sep.join([_ECU_HEADER, f"2{seq & 0xF:X}", hexs(rest[:7])]))
                rest, seq = rest[7:], seq + 1
            return lines
        lines = [f"{len(data):03X}"]
        first, rest, seq = data[:6], data[6:], 1
        lines.append(f"0:{sep}{hexs(first)}")
        while rest:
            lines.append(f"{seq & 0xF:X}:{sep}{hexs(rest[:7])}")
            rest, seq = rest[7:], seq + 1
        return lines

    def _battery_volts(self) -> float:
        spec = self._scenario.get("battery", {"base": 12.6})
        return self._value(spec)

    def _value(self, spec: Dict[str, Any]) -> float:
        if "profile" in spec:
            base = _interpolate(spec["profile"], self._elapsed_ms(), spec.get("loop", False))
        else:
            base = float(spec["base"])
        noise = spec.get("noise", 0.0) if self._noise else 0.0
        return _apply_noise(base, noise)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_scenarios_cache: Optional[Dict[str, Any]] = None


def _load_scenarios() -> Dict[str, Any]:
    global _scenarios_cache
    if _scenarios_cache is None:
        path = _FIXTURES_DIR / "simulation_scenarios.json"
        with open(path, encoding="utf-8") as fh:
            _scenarios_cache = json.load(fh)
    return _scenarios_cache


def _interpolate(points: Sequence[Sequence[float]], t_ms: float, loop: bool) -> float:
    """Linear interpolation over ``[t_ms, value]`` points; holds the ends."""
    if not points:
        raise ValueError("Empty profile")
    if loop and len(points) > 1:
        span = points[-1][0] - points[0][0]
        if span > 0:
            t_ms = points[0][0] + (t_ms - points[0][0]) % span
    if t_ms <= points[0][0]:
        return float(points[0][1])
    for (t1, v1), (t2, v2) in zip(points, points[1:]):
        if t_ms <= t2:
            if t2 == t1:
                return float(v2)
            return float(v1 + (v2 - v1) * (t_ms - t1) / (t2 - t1))
    return float(points[-1][1])


def _apply_noise(base: float, noise: float) -> float:
    """Apply Gaussian noise (std-dev = noise) to a base value."""
    if noise <= 0:
        return base
    return base + random.gauss(0, noise)
