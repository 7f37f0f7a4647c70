"""Table-driven Mode 01 PID decoding.

Each :class:`PidDefinition` pairs a pure decode formula over the data
bytes ``A``, ``B`` with its inverse (used by the adapter simulator) and
a plausibility range.  Formulas are total over 0-255 per byte; a result
outside the plausibility range is flagged on the reading, never clamped
or wrapped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from obd_forensics.errors import InsufficientData, MalformedResponse
from obd_forensics.schemas import PidReading

_HEX_RE = re.compile(r"^[0-9A-Fa-f]*$")

# Fuel system status (PID 03) bit meaning "closed loop, using O2 feedback".
CLOSED_LOOP_BIT = 0x02


@dataclass(frozen=True)
class PidDefinition:
    """Static description of one Mode 01 PID.

    Attributes
    ----------
    pid : str
        Two upper-case hex digits, e.g. ``"0C"``.
    name : str
        Human-readable name.
    unit : str
        Engineering unit of the decoded value.
    byte_count : int
        Data bytes the formula needs (1 or 2).
    min_value, max_value : float
        Plausible range; readings outside it are flagged.
    decoder : Callable[[Sequence[int]], float]
        ``bytes -> value``.
    encoder : Callable[[float], Tuple[int, ...]]
        ``value -> bytes``; nearest representable value.
    resolution : float
        Value of one least-significant step.
    formatter : Callable[[float], str] | None
        Optional display formatter.
    """

    pid: str
    name: str
    unit: str
    byte_count: int
    min_value: float
    max_value: float
    decoder: Callable[[Sequence[int]], float]
    encoder: Callable[[float], Tuple[int, ...]]
    resolution: float = 1.0
    formatter: Optional[Callable[[float], str]] = None

    def decode_bytes(self, data: Sequence[int]) -> float:
        if len(data) < self.byte_count:
            raise InsufficientData(self.pid, self.byte_count, len(data))
        return float(self.decoder(data))

    def to_reading(self, raw_hex: str) -> PidReading:
        """Decode the hex data bytes of a reply into a :class:`PidReading`."""
        data = parse_hex_bytes(raw_hex)
        value = self.decode_bytes(data)
        return PidReading(
            pid=self.pid,
            name=self.name,
            value=value,
            unit=self.unit,
            plausible=self.is_plausible(value),
            raw_hex=" ".join(f"{b:02X}" for b in data),
        )

    def is_plausible(self, value: float) -> bool:
        return self.min_value <= value <= self.max_value

    def format(self, value: float) -> str:
        if self.formatter is not None:
            return self.formatter(value)
        return f"{value:.1f} {self.unit}".rstrip()


# ---------------------------------------------------------------------------
# Encoders (inverse formulas)
# ---------------------------------------------------------------------------

def _byte(n: float) -> int:
    return max(0, min(255, int(round(n))))


def _word(n: float) -> Tuple[int, int]:
    v = max(0, min(0xFFFF, int(round(n))))
    return (v >> 8, v & 0xFF)


def _percent_enc(v: float) -> Tuple[int, ...]:
    return (_byte(v * 255 / 100),)


def _temp_enc(v: float) -> Tuple[int, ...]:
    return (_byte(v + 40),)


def _trim_enc(v: float) -> Tuple[int, ...]:
    return (_byte(v * 128 / 100 + 128),)


def _percent(d: Sequence[int]) -> float:
    return d[0] * 100 / 255


def _temp(d: Sequence[int]) -> float:
    return d[0] - 40


def _trim(d: Sequence[int]) -> float:
    return (d[0] - 128) * 100 / 128


def _percent_def(pid: str, name: str) -> PidDefinition:
    return PidDefinition(
        pid, name, "%", 1, 0.0, 100.0, _percent, _percent_enc,
        resolution=100 / 255,
    )


def _temp_def(pid: str, name: str, high: float) -> PidDefinition:
    return PidDefinition(
        pid, name, "°C", 1, -40.0, high, _temp, _temp_enc,
        formatter=lambda v: f"{v:.0f} °C",
    )


def _trim_def(pid: str, name: str) -> PidDefinition:
    return PidDefinition(
        pid, name, "%", 1, -100.0, 99.2, _trim, _trim_enc,
        resolution=100 / 128,
        formatter=lambda v: f"{v:+.1f} %",
    )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_DEFINITIONS: Tuple[PidDefinition, ...] = (
    PidDefinition(
        "03", "Fuel system status", "", 1, 0.0, 16.0,
        lambda d: d[0],
        lambda v: (_byte(v),),
        formatter=lambda v: "closed loop" if int(v) & CLOSED_LOOP_BIT else "open loop",
    ),
    _percent_def("04", "Engine load"),
    _temp_def("05", "Coolant temperature", 130.0),
    _trim_def("06", "Short term fuel trim (bank 1)"),
    _trim_def("07", "Long term fuel trim (bank 1)"),
    PidDefinition(
        "0A", "Fuel pressure", "kPa", 1, 0.0, 765.0,
        lambda d: d[0] * 3,
        lambda v: (_byte(v / 3),),
        resolution=3.0,
        formatter=lambda v: f"{v:.0f} kPa",
    ),
    PidDefinition(
        "0B", "Intake manifold pressure", "kPa", 1, 0.0, 255.0,
        lambda d: d[0],
        lambda v: (_byte(v),),
    ),
    PidDefinition(
        "0C", "Engine RPM", "rpm", 2, 0.0, 9000.0,
        lambda d: (d[0] * 256 + d[1]) / 4,
        lambda v: _word(v * 4),
        resolution=0.25,
        formatter=lambda v: f"{v:.0f} rpm",
    ),
    PidDefinition(
        "0D", "Vehicle speed", "km/h", 1, 0.0, 250.0,
        lambda d: d[0],
        lambda v: (_byte(v),),
        formatter=lambda v: f"{v:.0f} km/h",
    ),
    PidDefinition(
        "0E", "Timing advance", "°", 1, -64.0, 63.5,
        lambda d: d[0] / 2 - 64,
        lambda v: (_byte((v + 64) * 2),),
        resolution=0.5,
    ),
    _temp_def("0F", "Intake air temperature", 100.0),
    PidDefinition(
        "10", "Mass air flow", "g/s", 2, 0.0, 500.0,
        lambda d: (d[0] * 256 + d[1]) / 100,
        lambda v: _word(v * 100),
        resolution=0.01,
        formatter=lambda v: f"{v:.2f} g/s",
    ),
    _percent_def("11", "Throttle position"),
    PidDefinition(
        "14", "O2 sensor voltage (bank 1, sensor 1)", "V", 2, 0.0, 1.275,
        lambda d: d[0] / 200,
        # B = 0xFF: sensor not used for trim
        lambda v: (_byte(v * 200), 0xFF),
        resolution=0.005,
        formatter=lambda v: f"{v:.3f} V",
    ),
    PidDefinition(
        "1F", "Run time since engine start", "s", 2, 0.0, 65535.0,
        lambda d: d[0] * 256 + d[1],
        lambda v: _word(v),
        formatter=lambda v: f"{v:.0f} s",
    ),
    PidDefinition(
        "21", "Distance travelled with MIL on", "km", 2, 0.0, 65535.0,
        lambda d: d[0] * 256 + d[1],
        lambda v: _word(v),
        formatter=lambda v: f"{v:.0f} km",
    ),
    _percent_def("2F", "Fuel tank level"),
    PidDefinition(
        "42", "Control module voltage", "V", 2, 0.0, 20.0,
        lambda d: (d[0] * 256 + d[1]) / 1000,
        lambda v: _word(v * 1000),
        resolution=0.001,
        formatter=lambda v: f"{v:.2f} V",
    ),
    _temp_def("46", "Ambient air temperature", 70.0),
    _percent_def("52", "Ethanol fuel percent"),
)

PID_DEFINITIONS: Dict[str, PidDefinition] = {d.pid: d for d in _DEFINITIONS}

# Bitmap PIDs answering "which of the next 32 PIDs are supported".
SUPPORT_BITMAP_PIDS: Tuple[str, ...] = ("00", "20", "40", "60", "80", "A0", "C0")


def normalize_pid(pid: str) -> str:
    return pid.strip().upper().zfill(2)


def get_definition(pid: str) -> Optional[PidDefinition]:
    return PID_DEFINITIONS.get(normalize_pid(pid))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def parse_hex_bytes(raw_hex: str) -> List[int]:
    """Turn ``"1A F8"`` / ``"1AF8"`` into ``[0x1A, 0xF8]``."""
    compact = "".join(raw_hex.split())
    if not _HEX_RE.match(compact) or len(compact) % 2:
        raise MalformedResponse("Payload is not an even run of hex digits", raw_hex)
    return [int(compact[i:i + 2], 16) for i in range(0, len(compact), 2)]


def decode(pid: str, raw_hex: str) -> Optional[PidReading]:
    """Decode the data bytes of a Mode 01 reply for *pid*.

    Returns ``None`` when *pid* has no definition.  Raises
    :class:`InsufficientData` when fewer bytes than the formula needs were
    supplied and :class:`MalformedResponse` for non-hex payloads.  Extra
    trailing bytes are ignored.
    """
    definition = get_definition(pid)
    if definition is None:
        return None
    return definition.to_reading(raw_hex)


def encode(pid: str, value: float) -> str:
    """Inverse of :func:`decode`: hex data bytes for *value*."""
    definition = get_definition(pid)
    if definition is None:
        raise KeyError(f"No definition for PID {pid}")
    return " ".join(f"{b:02X}" for b in definition.encoder(value))


def supported_from_bitmap(base_pid: str, raw_hex: str) -> List[str]:
    """Expand a 4-byte support bitmap reply into PID identifiers.

    The MSB of the first byte stands for ``base + 1``.
    """
    data = parse_hex_bytes(raw_hex)
    if len(data) < 4:
        raise InsufficientData(normalize_pid(base_pid), 4, len(data))
    base = int(normalize_pid(base_pid), 16)
    supported: List[str] = []
    for byte_index, byte in enumerate(data[:4]):
        for bit in range(8):
            if byte & (0x80 >> bit):
                supported.append(f"{base + byte_index * 8 + bit + 1:02X}")
    return supported


def bitmap_for(base_pid: str, pids: Sequence[str]) -> str:
    """Build the 4-byte support bitmap advertising *pids* (simulator side)."""
    base = int(normalize_pid(base_pid), 16)
    bits = 0
    for pid in pids:
        offset = int(normalize_pid(pid), 16) - base
        if 1 <= offset <= 32:
            bits |= 1 << (32 - offset)
    return " ".join(f"{(bits >> shift) & 0xFF:02X}" for shift in (24, 16, 8, 0))


def is_closed_loop(status: float) -> bool:
    """True when a fuel-system-status value reports closed-loop operation."""
    return bool(int(status) & CLOSED_LOOP_BIT)
