"""Retry with exponential backoff and jitter for idempotent backend calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, TypeVar

from src.chat.errors import ApiError, TransportError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_retryable(exc: BaseException) -> bool:
    """Network failures and 5xx API errors are worth another try; nothing else is."""
    if isinstance(exc, TransportError):
        return True
    if isinstance(exc, ApiError):
        return exc.status_code is not None and exc.status_code >= 500
    return False


def backoff_delay(
    attempt: int,
    initial_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay before retry ``attempt`` (0-based), capped, plus up to 25% jitter."""
    delay = min(initial_delay * multiplier**attempt, max_delay)
    if jitter:
        delay += delay * random.random() * 0.25  # noqa: S311
    return delay


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int,
    initial_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
    jitter: bool = True,
    retry_on: Callable[[BaseException], bool] = is_retryable,
) -> T:
    """Call ``fn`` until it succeeds, a non-retryable error occurs, or retries run out."""
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries or not retry_on(exc):
                raise
            delay = backoff_delay(attempt, initial_delay, max_delay, multiplier, jitter)
            attempt += 1
            logger.info("Retry %d/%d in %.2fs after: %s", attempt, max_retries, delay, exc)
            await asyncio.sleep(delay)
