"""Diagnostic trouble codes (Modes 03, 07, 0A, 04) and freeze frames (Mode 02).

A code travels as two bytes.  The top two bits pick the system letter
(``P``, ``C``, ``B``, ``U``), the next two the first digit (0-3) and
the remaining twelve bits the last three hex digits::

    0x0171 -> P0171      0xC100 -> U0100

Reply layouts differ by bus:

* CAN: ``43 <count> <code> <code> ...``.  The count byte makes the data
  after the service byte odd-sized.
* legacy (K-line, J1850): ``43 <code> <code> <code>``, three codes per
  line padded with ``00 00``.  No count.

Each ECU's message is parsed on its own and codes are de-duplicated per
ECU.  An ECU that refuses the request answers ``7F <service> <code>``.
"""

from __future__ import annotations

import re
from typing import List, Optional, Sequence, Set, Tuple

from obd_forensics.errors import MalformedResponse, NegativeResponse
from obd_forensics.frames import Message
from obd_forensics.schemas import DiagnosticTroubleCode, DtcKind

DTC_SERVICES = {
    DtcKind.STORED: "03",
    DtcKind.PENDING: "07",
    DtcKind.PERMANENT: "0A",
}
CLEAR_SERVICE = "04"
FREEZE_FRAME_SERVICE = "02"

# Mode 02 PID 02 names the code that stored the freeze frame.
FREEZE_FRAME_DTC_PID = "02"

FREEZE_FRAME_PIDS: Tuple[str, ...] = (
    "04", "05", "0C", "0D", "0E", "0F", "10", "11",
    "06", "07", "0A", "1F", "21",
)

NEGATIVE_RESPONSE_CODES = {
    "10": "General Reject",
    "11": "Service Not Supported",
    "12": "Sub-Function Not Supported",
    "13": "Incorrect Message Length",
    "14": "Response Too Long",
    "22": "Conditions Not Correct",
    "31": "Request Out Of Range",
    "33": "Security Access Denied",
    "35": "Invalid Key",
    "72": "General Programming Failure",
    "78": "Response Pending",
}

_LETTERS = "PCBU"
_CODE_RE = re.compile(r"^([PCBU])([0-3])([0-9A-F]{3})$")
_NEGATIVE = "7F"


# ---------------------------------------------------------------------------
# Code conversion
# ---------------------------------------------------------------------------

def decode_dtc(raw: str) -> str:
    """``"0171"`` -> ``"P0171"``."""
    if len(raw) != 4:
        raise MalformedResponse("A trouble code is two bytes", raw)
    word = int(raw, 16)
    return f"{_LETTERS[word >> 14]}{(word >> 12) & 0x3}{word & 0xFFF:03X}"


def encode_dtc(code: str) -> str:
    """``"P0171"`` -> ``"0171"``; the inverse of :func:`decode_dtc`."""
    match = _CODE_RE.match(code.strip().upper())
    if match is None:
        raise ValueError(f"Not a trouble code: {code!r}")
    letter, digit, rest = match.groups()
    word = (_LETTERS.index(letter) << 14) | (int(digit) << 12) | int(rest, 16)
    return f"{word:04X}"


def describe_nrc(code: str) -> str:
    return NEGATIVE_RESPONSE_CODES.get(code.upper(), f"Unknown NRC {code.upper()}")


def response_service(service: str) -> str:
    """Positive-response byte for *service*, e.g. ``"03"`` -> ``"43"``."""
    return f"{int(service, 16) + 0x40:02X}"


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------

def parse_dtc_messages(
    messages: Sequence[Message],
    service: str,
    kind: DtcKind,
) -> List[DiagnosticTroubleCode]:
    """Codes from every ECU that answered *service*, in arrival order.

    ``00 00`` padding is skipped and a code repeated by the same ECU is
    kept once.  Raises :class:`NegativeResponse` when no ECU answered
    positively but one refused, and :class:`MalformedResponse` when
    nothing in the reply belongs to *service*.
    """
    positive = response_service(service)
    codes: List[DiagnosticTroubleCode] = []
    seen: Set[Tuple[str, Optional[str]]] = set()
    answered = False
    refusal: Optional[str] = None

    for message in messages:
        if message.data.startswith(_NEGATIVE + service):
            refusal = refusal or message.data[4:6]
            continue
        if not message.data.startswith(positive):
            continue
        answered = True
        for raw in _code_words(message.data[2:], message.data):
            if raw == "0000":
                continue
            code = decode_dtc(raw)
            if (code, message.header) in seen:
                continue
            seen.add((code, message.header))
            codes.append(
                DiagnosticTroubleCode(code=code, raw=raw, kind=kind, ecu=message.header)
            )

    if not answered:
        if refusal is not None:
            raise NegativeResponse(service, refusal, describe_nrc(refusal))
        raise MalformedResponse(
            f"No reply to service {service}",
            " | ".join(m.data for m in messages),
        )
    return codes


def _code_words(body: str, raw: str) -> List[str]:
    if (len(body) // 2) % 2 == 1:
        count = int(body[:2], 16)
        body = body[2:]
        if len(body) < count * 4:
            raise MalformedResponse(
                f"Reply announces {count} code(s) but carries {len(body) // 4}", raw
            )
        body = body[: count * 4]
    return [body[i:i + 4] for i in range(0, len(body) - 3, 4)]


def count_clear_acknowledgements(messages: Sequence[Message]) -> int:
    """Number of ECUs that confirmed a Mode 04 clear."""
    acknowledged = sum(
        1 for m in messages if m.data.startswith(response_service(CLEAR_SERVICE))
    )
    if acknowledged:
        return acknowledged
    for message in messages:
        if message.data.startswith(_NEGATIVE + CLEAR_SERVICE):
            nrc = message.data[4:6]
            raise NegativeResponse(CLEAR_SERVICE, nrc, describe_nrc(nrc))
    raise MalformedResponse(
        "No ECU acknowledged the clear",
        " | ".join(m.data for m in messages),
    )


def strip_frame_number(payload: str, frame: int, byte_count: int) -> str:
    """Drop the frame-number byte some ECUs echo in Mode 02 replies.

    The byte is only removed when the payload is long enough to hold it
    plus *byte_count* data bytes.
    """
    if len(payload) >= (byte_count + 1) * 2 and payload[:2] == f"{frame:02X}":
        return payload[2:]
    return payload
