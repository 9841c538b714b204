"""
Retry utility with exponential backoff for handling transient failures.
Used for page visits (navigation errors, broken contexts) and for
browser-context creation inside the pool.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from resource_scanner.utils import errors, logger

log = logger.create_logger("Retry")

T = TypeVar("T")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    initial_delay_ms: int = 250,
    max_delay_ms: int = 10000,
    backoff_multiplier: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    give_up_on: tuple[type[BaseException], ...] = (),
    context: str | None = None,
) -> T:
    """
    Execute an async function, retrying on failures of the ``retry_on`` types.

    ``max_attempts`` counts every call including the first one.  Errors
    matching ``give_up_on`` (or not matching ``retry_on``) are raised
    immediately.  The last error is re-raised once attempts run out.
    Uses exponential backoff with +/-20% jitter between attempts.
    """
    delay = initial_delay_ms
    attempts = max(1, max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except Exception as error:
            if isinstance(error, give_up_on) or not isinstance(error, retry_on):
                raise

            if attempt >= attempts:
                log.warn(
                    "All retry attempts exhausted",
                    {
                        "context": context,
                        "attempts": attempt,
                        "error": errors.get_error_message(error),
                    },
                )
                raise

            jitter = delay * 0.2 * (random.random() * 2 - 1)
            delay_with_jitter = max(0, min(round(delay + jitter), max_delay_ms))

            log.warn(
                "Retrying after failure",
                {
                    "context": context,
                    "attempt": attempt,
                    "maxAttempts": attempts,
                    "delayMs": delay_with_jitter,
                    "error": errors.get_error_message(error)[:100],
                },
            )

            if delay_with_jitter:
                await asyncio.sleep(delay_with_jitter / 1000)
            delay = min(int(delay * backoff_multiplier), max_delay_ms)

    # Unreachable: the loop either returns or raises.
    raise RuntimeError("with_retry exhausted without result")
