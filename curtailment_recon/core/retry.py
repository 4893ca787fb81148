"""Bounded exponential backoff for transient failures."""

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from curtailment_recon.core.exceptions import RateLimitedError, is_retryable

logger = structlog.get_logger()

T = TypeVar("T")


def calculate_retry_delay(
    retry_count: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.1,
) -> float:
    """Calculate exponential backoff delay.

    Delay doubles with each retry (1s, 2s, 4s, ...), is capped at
    ``max_delay`` and then spread by +/- ``jitter``.
    """
    delay = min(base_delay * (2 ** retry_count), max_delay)
    if jitter:
        spread = delay * jitter
        delay = delay + random.uniform(-spread, spread)
    return max(delay, 0.0)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    description: str = "operation",
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``operation()`` retrying transport errors.

    Non-retryable errors propagate on the first failure. Once ``attempts``
    calls have failed the last error is raised.
    """
    attempts = max(attempts, 1)

    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt == attempts - 1:
                raise

            if isinstance(exc, RateLimitedError):
                delay = exc.retry_after
            else:
                delay = calculate_retry_delay(attempt, base_delay, max_delay)

            logger.warning(
                "Retrying after transient failure",
                operation=description,
                attempt=attempt + 1,
                max_attempts=attempts,
                delay_seconds=round(delay, 2),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if on_retry is not None:
                on_retry(attempt + 1, exc)
            await sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
