"""Retry with exponential backoff for model calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from agent.events import LLMResult, StreamError

logger = logging.getLogger(__name__)

RETRYABLE_CODES = frozenset({"RATE_LIMIT", "TIMEOUT", "NETWORK_ERROR", "SERVER_ERROR"})
_RETRYABLE_HINTS = ("timeout", "rate limit", "network")


def is_retryable(error: StreamError) -> bool:
    if error.code in RETRYABLE_CODES:
        return True
    message = (error.message or "").lower()
    return any(hint in message for hint in _RETRYABLE_HINTS)


async def call_with_retry(
    attempt: Callable[[], Awaitable[LLMResult]],
    *,
    max_retries: int,
    delay_ms: float,
    multiplier: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, float, StreamError], Awaitable[None]]] = None,
) -> LLMResult:
    """Run ``attempt`` up to ``max_retries + 1`` times.

    Only retryable errors are retried; the wait before retry ``n`` is
    ``delay_ms * multiplier ** (n - 1)``. The last result is returned either way.
    """
    delay = delay_ms
    result = LLMResult()
    for n in range(max_retries + 1):
        if n > 0:
            logger.warning(f"Retrying model call ({n}/{max_retries}) in {delay:.0f}ms: {result.error.message}")
            if on_retry is not None:
                await on_retry(n, delay, result.error)
            await sleep(delay / 1000)
            delay *= multiplier

        result = await attempt()
        if result.error is None:
            return result
        if not is_retryable(result.error) or n == max_retries:
            return result
    return result
