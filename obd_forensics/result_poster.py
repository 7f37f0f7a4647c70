"""Delivery of finished diagnoses to the results API.

Each analysis result goes to its own endpoint, ``/v1/diagnostics/<kind>``,
where kind is ``fuel_audit``, ``cranking`` or ``parasitic_draw``.  A
diagnosis that cannot be delivered (server error or no network) is kept
in a bounded backlog and re-sent, oldest first, before the next one.
Rejected payloads (4xx) are dropped, and a missing endpoint (404/501)
counts as delivered so a partially deployed API never blocks the backlog.
With ``dry_run`` nothing leaves the device.
"""

from __future__ import annotations

import asyncio
from collections import deque
from enum import Enum
from typing import Deque, NamedTuple, Union

import httpx
import structlog

from obd_forensics.config import ForensicsSettings
from obd_forensics.schemas import CrankingTestResult, ParasiticDrawResult, RefuelEntry

logger = structlog.get_logger(__name__)

_ENDPOINT_TEMPLATE = "/v1/diagnostics/{kind}"

DiagnosisResult = Union[RefuelEntry, CrankingTestResult, ParasiticDrawResult]


def result_kind(result: DiagnosisResult) -> str:
    """Endpoint name for *result*."""
    if isinstance(result, RefuelEntry):
        return "fuel_audit"
    if isinstance(result, CrankingTestResult):
        return "cranking"
    if isinstance(result, ParasiticDrawResult):
        return "parasitic_draw"
    raise TypeError(f"Unsupported result type: {type(result).__name__}")


def result_verdict(result: DiagnosisResult) -> str:
    """Headline verdict of *result*, used in delivery logs."""
    if isinstance(result, RefuelEntry):
        return result.quality.value
    return result.classification.value


class QueuedDiagnosis(NamedTuple):
    kind: str
    verdict: str
    payload: str


class _Delivery(Enum):
    DELIVERED = "delivered"
    RETRY_LATER = "retry_later"
    REJECTED = "rejected"


class ResultPoster:
    """Posts diagnosis results, keeping undelivered ones in a backlog."""

    def __init__(self, settings: ForensicsSettings) -> None:
        self._base_url = settings.diagnostic_api_base_url.rstrip("/")
        self._max_attempts = settings.max_retry_attempts
        self._dry_run = settings.dry_run
        self._backlog: Deque[QueuedDiagnosis] = deque(maxlen=settings.offline_buffer_max)
        self._client: httpx.AsyncClient | None = None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        if not self._dry_run:
            self._client = httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        if self._backlog:
            logger.warning("diagnosis_backlog_unsent", pending=len(self._backlog))
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ResultPoster":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- public API ---------------------------------------------------------

    async def post_result(self, result: DiagnosisResult) -> bool:
        """Deliver *result*; ``True`` once the API has it (or in dry run).

        ``False`` means it was either queued for a later attempt or
        rejected by the API.
        """
        item = QueuedDiagnosis(
            kind=result_kind(result),
            verdict=result_verdict(result),
            payload=result.model_dump_json(),
        )

        if self._dry_run:
            logger.info(
                "dry_run_diagnosis",
                kind=item.kind,
                verdict=item.verdict,
                payload_bytes=len(item.payload),
            )
            return True

        await self._flush_backlog()

        outcome = await self._deliver(item)
        if outcome is _Delivery.DELIVERED:
            return True
        if outcome is _Delivery.RETRY_LATER:
            if len(self._backlog) == self._backlog.maxlen:
                dropped = self._backlog[0]
                logger.warning("diagnosis_dropped", kind=dropped.kind, verdict=dropped.verdict)
            self._backlog.append(item)
            logger.warning(
                "diagnosis_queued",
                kind=item.kind,
                verdict=item.verdict,
                backlog=len(self._backlog),
            )
        return False

    @property
    def buffer_size(self) -> int:
        """Number of diagnoses waiting for delivery."""
        return len(self._backlog)

    # -- internal -----------------------------------------------------------

    async def _flush_backlog(self) -> None:
        delivered = 0
        while self._backlog:
            if await self._deliver(self._backlog[0]) is not _Delivery.DELIVERED:
                break
            self._backlog.popleft()
            delivered += 1
        if delivered:
            logger.info("diagnosis_backlog_flushed", delivered=delivered, remaining=len(self._backlog))

    async def _deliver(self, item: QueuedDiagnosis) -> _Delivery:
        """POST one diagnosis, retrying 5xx and network errors with backoff."""
        if self._client is None:
            raise RuntimeError("ResultPoster.start() must be called before sending")
        url = f"{self._base_url}{_ENDPOINT_TEMPLATE.format(kind=item.kind)}"

        for attempt in range(1, self._max_attempts + 1):
            try:
                response = await self._client.post(
                    url,
                    content=item.payload,
                    headers={"Content-Type": "application/json"},
                )
            except httpx.RequestError as exc:
                reason = f"network: {exc}"
            else:
                status = response.status_code
                if status in (404, 501):
                    logger.info("diagnosis_endpoint_missing", kind=item.kind, status=status, url=url)
                    return _Delivery.DELIVERED
                if 400 <= status < 500:
                    logger.error(
                        "diagnosis_rejected",
                        kind=item.kind,
                        verdict=item.verdict,
                        status=status,
                        body=response.text[:500],
                    )
                    return _Delivery.REJECTED
                if 200 <= status < 300:
                    logger.info("diagnosis_posted", kind=item.kind, verdict=item.verdict, status=status)
                    return _Delivery.DELIVERED
                reason = f"server: HTTP {status}"

            wait = 2 ** (attempt - 1)
            logger.warning(
                "diagnosis_post_failed",
                kind=item.kind,
                attempt=attempt,
                max_attempts=self._max_attempts,
                reason=reason,
                retry_in=wait if attempt < self._max_attempts else None,
            )
            if attempt < self._max_attempts:
                await asyncio.sleep(wait)

        return _Delivery.RETRY_LATER
