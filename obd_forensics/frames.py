"""Reassembly of adapter reply lines into logical messages.

An ELM327 reply to one command may span several lines:

* headers off, single frame: ``41 0C 1A F8``
* headers off, multi-frame: a byte-count line (``014``) followed by
  indexed segments ``0: 49 02 01 31 44 34``, ``1: ...``
* headers on (CAN 11-bit ``7E8`` or 29-bit ``18DAF110``): every line is
  ``<header> <PCI> <data>`` where the PCI nibble marks a single frame,
  an ISO-TP first frame or a consecutive frame.

Some adapters print headered single frames even after ``AT H0``, so
those are recognised whatever the header setting.

Several ECUs may answer the same request, so a reply is a list of
messages kept in arrival order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from obd_forensics.errors import MalformedResponse

_SEGMENT_RE = re.compile(r"^([0-9A-F]):([0-9A-F]*)$")
_LENGTH_RE = re.compile(r"^[0-9A-F]{3}$")
_CAN11_RE = re.compile(r"^(7[0-9A-F]{2})([0-9A-F]{2,})$")
_CAN29_RE = re.compile(r"^(18DA[0-9A-F]{4})([0-9A-F]{2,})$")
_HEX_RE = re.compile(r"^[0-9A-F]+$")

_PCI_SINGLE = 0x0
_PCI_FIRST = 0x1
_PCI_CONSECUTIVE = 0x2


@dataclass(frozen=True)
class Message:
    """One logical reply from one ECU (``header`` is ``None`` with headers off)."""

    data: str
    header: Optional[str] = None

    @property
    def data_bytes(self) -> List[int]:
        return [int(self.data[i:i + 2], 16) for i in range(0, len(self.data), 2)]


@dataclass
class _Assembly:
    order: int
    header: Optional[str]
    expected: int
    data: str = ""
    next_seq: int = 1
    done: bool = False

    def append(self, seq: int, chunk: str, raw: str) -> None:
        if seq != self.next_seq:
            raise MalformedResponse(
                f"Frame sequence error: expected {self.next_seq:X}, got {seq:X}",
                raw,
            )
        self.next_seq = (self.next_seq + 1) & 0xF
        self.data += chunk
        if len(self.data) >= self.expected * 2:
            self.data = self.data[: self.expected * 2]
            self.done = True


def _compact(line: str) -> str:
    return "".join(line.split()).upper()


def parse_lines(lines: Sequence[str], headers: bool = False) -> List[Message]:
    """Assemble reply *lines* into messages ordered by first arrival.

    Raises :class:`MalformedResponse` on broken multi-frame sequences or
    lines that are not hex.
    """
    finished: List[tuple] = []
    open_frames: Dict[Optional[str], _Assembly] = {}
    indexed: Optional[_Assembly] = None

    for order, raw in enumerate(lines):
        line = _compact(raw)
        if not line:
            continue

        # -- headers off, indexed multi-frame ------------------------------
        seg = _SEGMENT_RE.match(line)
        if seg is not None:
            seq, chunk = int(seg.group(1), 16), seg.group(2)
            if indexed is None:
                raise MalformedResponse("Frame segment without a length line", raw)
            indexed.append(seq, chunk, raw)
            if indexed.done:
                finished.append((indexed.order, Message(indexed.data)))
                indexed = None
            continue

        if not headers and _LENGTH_RE.match(line):
            indexed = _Assembly(
                order=order, header=None, expected=int(line, 16), next_seq=0
            )
            continue

        if not _HEX_RE.match(line):
            raise MalformedResponse("Reply line is not hex", raw)

        # -- CAN header ---------------------------------------------------
        can = _CAN29_RE.match(line) or _CAN11_RE.match(line)
        if can is not None:
            if headers:
                message = _feed_can(can.group(1), can.group(2), order, raw, open_frames)
                if message is not None:
                    finished.append(message)
                continue
            message = _headered_single_frame(can.group(1), can.group(2), order)
            if message is not None:
                finished.append(message)
                continue

        finished.append((order, Message(line)))

    if indexed is not None or any(not a.done for a in open_frames.values()):
        raise MalformedResponse("Multi-frame reply ended before all frames arrived")

    finished.sort(key=lambda item: item[0])
    return [message for _, message in finished]


def _feed_can(
    header: str,
    body: str,
    order: int,
    raw: str,
    open_frames: Dict[Optional[str], _Assembly],
) -> Optional[tuple]:
    pci = int(body[0], 16)
    if pci == _PCI_SINGLE:
        length = int(body[1], 16)
        data = body[2:2 + length * 2]
        if len(data) < length * 2:
            raise MalformedResponse("Single frame shorter than its length", raw)
        return (order, Message(data, header))

    if pci == _PCI_FIRST:
        if len(body) < 4:
            raise MalformedResponse("Truncated first frame", raw)
        length = int(body[1:4], 16)
        assembly = _Assembly(order=order, header=header, expected=length, data=body[4:])
        open_frames[header] = assembly
        return None

    if pci == _PCI_CONSECUTIVE:
        assembly = open_frames.get(header)
        if assembly is None or assembly.done:
            raise MalformedResponse("Consecutive frame without a first frame", raw)
        assembly.append(int(body[1], 16), body[2:], raw)
        if assembly.done:
            del open_frames[header]
            return (assembly.order, Message(assembly.data, header))
        return None

    raise MalformedResponse(f"Unknown frame type {pci:X}", raw)


def _headered_single_frame(header: str, body: str, order: int) -> Optional[tuple]:
    """Headered single frame seen while headers are off, else ``None``.

    The first data byte must be a response service (``0x40`` and up), so a
    header-less ``7F`` negative response is never mistaken for a header.
    """
    if int(body[0], 16) != _PCI_SINGLE:
        return None
    length = int(body[1], 16)
    data = body[2:2 + length * 2]
    if length == 0 or len(data) < length * 2 or int(data[:2], 16) < 0x40:
        return None
    return (order, Message(data, header))


def find_payload(messages: Sequence[Message], prefix: str) -> Optional[str]:
    """Return the data after *prefix* from the first message that starts with it.

    *prefix* is the positive-response service byte plus identifier,
    e.g. ``"410C"``.  Messages are scanned in arrival order, so when
    several ECUs answer, the earliest one wins.
    """
    prefix = prefix.upper()
    for message in messages:
        if message.data.startswith(prefix):
            return message.data[len(prefix):]
    return None
