"""Mode 01 reads, capability probing, adapter voltage and trouble codes.

``LivePidReader`` turns framer replies into :class:`PidReading` values.
Timeouts are retried with exponential backoff per logical read; adapter
error tokens and decode failures are not retried.

Probe cache policy: both positive and negative probe results are kept
for the lifetime of the reader, which is one adapter session.  Transient
faults (timeouts, transport loss, adapter bus errors, replies that do
not match the request) are never cached.  :meth:`LivePidReader.forget`
clears the cache, e.g. after the ignition state changed.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional

import structlog

from obd_forensics import dtc, pids
from obd_forensics.errors import (
    InsufficientData,
    MalformedResponse,
    UnsupportedPid,
)
from obd_forensics.framer import ProtocolFramer, Response
from obd_forensics.retry import retry_with_backoff
from obd_forensics.schemas import (
    DiagnosticTroubleCode,
    DtcKind,
    FreezeFrame,
    PidReading,
)

logger = structlog.get_logger(__name__)

_RV_RE = re.compile(r"(\d+(?:\.\d+)?)\s*V?$", re.IGNORECASE)

VOLTAGE_PID = "42"


class LivePidReader:
    """Reads and decodes Mode 01 PIDs through a :class:`ProtocolFramer`."""

    def __init__(
        self,
        framer: ProtocolFramer,
        *,
        timeout: Optional[float] = None,
        attempts: int = 3,
        initial_delay: float = 0.25,
        max_delay: float = 2.0,
    ) -> None:
        self._framer = framer
        self._timeout = timeout
        self._attempts = attempts
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._probe_cache: Dict[str, bool] = {}
        self._supported: Optional[List[str]] = None

    # -- public API ---------------------------------------------------------

    async def read(self, pid: str) -> PidReading:
        """Read and decode one PID.

        Raises
        ------
        ValueError
            *pid* has no decoder definition.
        UnsupportedPid
            The vehicle answered ``NO DATA``.
        MalformedResponse
            The reply carried no message for *pid* or too few bytes.
        ResponseTimeout, TransportError
            Transient faults, after retries.
        """
        pid = pids.normalize_pid(pid)
        definition = pids.get_definition(pid)
        if definition is None:
            raise ValueError(f"No decoder for PID {pid}")
        response = await self._query(f"01{pid}")
        payload = response.payload(f"41{pid}")
        if payload is None:
            raise MalformedResponse(f"No reply for PID {pid}", response.text)
        reading = definition.to_reading(payload)
        self._probe_cache[pid] = True
        if not reading.plausible:
            logger.warning(
                "implausible_reading",
                pid=pid,
                value=reading.value,
                raw=reading.raw_hex,
            )
        return reading

    async def read_value(self, pid: str) -> Optional[float]:
        """Like :meth:`read` but ``None`` when the PID is unsupported."""
        try:
            return (await self.read(pid)).value
        except UnsupportedPid:
            self._probe_cache[pids.normalize_pid(pid)] = False
            return None

    async def read_many(self, pid_list: Iterable[str]) -> Dict[str, PidReading]:
        """Read every supported PID in *pid_list*; unsupported ones are skipped."""
        readings: Dict[str, PidReading] = {}
        for pid in pid_list:
            pid = pids.normalize_pid(pid)
            if self._probe_cache.get(pid) is False:
                continue
            try:
                readings[pid] = await self.read(pid)
            except UnsupportedPid:
                self._probe_cache[pid] = False
            except MalformedResponse as exc:
                logger.warning("pid_read_malformed", pid=pid, error=str(exc))
        return readings

    async def probe(self, pid: str) -> bool:
        """Return whether the vehicle answers *pid*.

        ``NO DATA`` yields ``False``.  A reply that names the PID but is
        short still counts as supported.  Timeouts and transport faults
        propagate and are not cached.
        """
        pid = pids.normalize_pid(pid)
        cached = self._probe_cache.get(pid)
        if cached is not None:
            return cached
        try:
            await self.read(pid)
        except UnsupportedPid:
            self._probe_cache[pid] = False
        except InsufficientData:
            self._probe_cache[pid] = True
        logger.debug("pid_probed", pid=pid, supported=self._probe_cache.get(pid))
        return self._probe_cache[pid]

    def forget(self) -> None:
        """Drop every cached capability result."""
        self._probe_cache.clear()
        self._supported = None

    async def supported_pids(self) -> List[str]:
        """Walk the ``0100``/``0120``/... support bitmaps.

        The result is cached like probe results.
        """
        if self._supported is not None:
            return list(self._supported)
        supported: List[str] = []
        for base in pids.SUPPORT_BITMAP_PIDS:
            try:
                response = await self._query(f"01{base}")
                payload = response.payload(f"41{base}")
            except UnsupportedPid:
                break
            if payload is None:
                break
            chunk = pids.supported_from_bitmap(base, payload)
            supported.extend(p for p in chunk if p not in pids.SUPPORT_BITMAP_PIDS)
            next_index = pids.SUPPORT_BITMAP_PIDS.index(base) + 1
            if next_index >= len(pids.SUPPORT_BITMAP_PIDS):
                break
            if pids.SUPPORT_BITMAP_PIDS[next_index] not in chunk:
                break
        self._supported = supported
        logger.info("supported_pids_discovered", count=len(supported))
        return list(supported)

    async def read_adapter_voltage(self) -> float:
        """Voltage at the OBD port as measured by the adapter (``AT RV``)."""
        response = await self._query("ATRV")
        response.raise_for_error()
        for line in response.lines:
            match = _RV_RE.search(line.strip())
            if match:
                return float(match.group(1))
        raise MalformedResponse("Unparseable AT RV reply", response.text)

    async def read_voltage(self) -> float:
        """Battery voltage from PID 42, falling back to ``AT RV``."""
        if self._probe_cache.get(VOLTAGE_PID) is not False:
            try:
                return (await self.read(VOLTAGE_PID)).value
            except UnsupportedPid:
                self._probe_cache[VOLTAGE_PID] = False
                logger.info("voltage_pid_unsupported", fallback="ATRV")
        return await self.read_adapter_voltage()

    async def read_vin(self) -> Optional[str]:
        """Vehicle identification number (Mode 09 PID 02), multi-frame."""
        try:
            response = await self._query("0902")
            payload = response.payload("4902")
        except UnsupportedPid:
            return None
        if payload is None:
            return None
        # First byte is the item count.
        raw = bytes.fromhex(payload[2:])
        return raw.replace(b"\x00", b"").decode("ascii", errors="replace").strip() or None

    # -- trouble codes ------------------------------------------------------

    async def read_dtcs(self, kind: DtcKind = DtcKind.STORED) -> List[DiagnosticTroubleCode]:
        """Read stored (03), pending (07) or permanent (0A) trouble codes.

        ``NO DATA`` means no ECU has a code of that kind and yields ``[]``.
        :class:`NegativeResponse` is raised when the service is refused.
        """
        service = dtc.DTC_SERVICES[kind]
        response = await self._query(service)
        try:
            response.raise_for_error()
        except UnsupportedPid:
            logger.debug("dtc_service_no_data", kind=kind.value)
            return []
        codes = dtc.parse_dtc_messages(response.messages(), service, kind)
        logger.info(
            "dtcs_read",
            kind=kind.value,
            count=len(codes),
            codes=[c.code for c in codes],
        )
        return codes

    async def clear_dtcs(self) -> int:
        """Clear codes and freeze frames (Mode 04).

        Most ECUs also reset their readiness monitors and the long term
        fuel trim adaptation.  Returns the number of ECUs that confirmed.
        """
        response = await self._query(dtc.CLEAR_SERVICE)
        response.raise_for_error()
        acknowledged = dtc.count_clear_acknowledgements(response.messages())
        logger.warning("dtcs_cleared", ecus=acknowledged)
        return acknowledged

    async def read_freeze_frame(
        self,
        frame: int = 0,
        pid_list: Iterable[str] = dtc.FREEZE_FRAME_PIDS,
    ) -> Optional[FreezeFrame]:
        """Read freeze frame *frame* (Mode 02), or ``None`` when none is stored.

        PIDs the ECU did not record are left out of the readings.
        """
        try:
            trigger = await self._freeze_frame_payload(dtc.FREEZE_FRAME_DTC_PID, frame, 2)
        except UnsupportedPid:
            trigger = None
        if trigger is None or trigger[:4] == "0000":
            logger.info("freeze_frame_empty", frame=frame)
            return None
        trigger_dtc = dtc.decode_dtc(trigger[:4])

        readings: Dict[str, PidReading] = {}
        for pid in pid_list:
            pid = pids.normalize_pid(pid)
            definition = pids.get_definition(pid)
            if definition is None:
                raise ValueError(f"No decoder for PID {pid}")
            try:
                payload = await self._freeze_frame_payload(pid, frame, definition.byte_count)
            except UnsupportedPid:
                continue
            if payload is None:
                logger.warning("freeze_frame_pid_missing", pid=pid, frame=frame)
                continue
            try:
                readings[pid] = definition.to_reading(payload)
            except MalformedResponse as exc:
                logger.warning("freeze_frame_pid_malformed", pid=pid, error=str(exc))

        logger.info(
            "freeze_frame_read",
            frame=frame,
            trigger_dtc=trigger_dtc,
            pids=sorted(readings),
        )
        return FreezeFrame(frame=frame, trigger_dtc=trigger_dtc, readings=readings)

    # -- internal -----------------------------------------------------------

    async def _freeze_frame_payload(self, pid: str, frame: int, byte_count: int) -> Optional[str]:
        response = await self._query(f"{dtc.FREEZE_FRAME_SERVICE}{pid}{frame:02X}")
        payload = response.payload(f"42{pid}")
        if payload is None:
            return None
        return dtc.strip_frame_number(payload, frame, byte_count)

    async def _query(self, command: str) -> Response:
        return await retry_with_backoff(
            lambda: self._framer.send(command, self._timeout),
            attempts=self._attempts,
            initial_delay=self._initial_delay,
            max_delay=self._max_delay,
            label=command,
        )
