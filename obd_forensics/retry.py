"""Exponential-backoff retry for one logical adapter operation."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import structlog

from obd_forensics.errors import ResponseTimeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    factor: float = 2.0,
    retry_on: Tuple[Type[BaseException], ...] = (ResponseTimeout,),
    label: str = "operation",
) -> T:
    """Await *operation* up to *attempts* times.

    Only exceptions listed in *retry_on* trigger another attempt; the
    delay starts at *initial_delay* and is multiplied by *factor* after
    every failure, capped at *max_delay*.  The last failure propagates.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")

    delay = initial_delay
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as exc:
            if attempt == attempts:
                logger.warning(
                    "retry_exhausted",
                    label=label,
                    attempts=attempts,
                    error=str(exc),
                )
                raise
            logger.info(
                "retry_scheduled",
                label=label,
                attempt=attempt,
                max_attempts=attempts,
                retry_in=round(delay, 3),
                error=str(exc),
            )
            await asyncio.sleep(delay)
            delay = min(delay * factor, max_delay)
    raise AssertionError("unreachable")
