"""
Bounded exponential backoff for transient storage failures.

Only StorageError is retried. Every other error propagates on the first
attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from ..errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_storage(
    operation: Callable[[], Awaitable[T]],
    max_retries: int,
    retry_delay_ms: int,
    description: str,
) -> T:
    """Run ``operation``, retrying StorageError up to ``max_retries`` times.

    The delay doubles after each failed attempt.

    Raises:
        StorageError: The last failure once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except StorageError as e:
            if attempt >= max_retries:
                logger.error(
                    f"{description} failed after {attempt + 1} attempts: {e}",
                    extra={"attempts": attempt + 1, "operation": e.operation},
                )
                raise
            delay = retry_delay_ms * (2**attempt) / 1000.0
            logger.warning(
                f"{description} failed, retrying in {delay:.3f}s: {e}",
                extra={"attempt": attempt + 1},
            )
            attempt += 1
            await asyncio.sleep(delay)
