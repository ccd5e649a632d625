"""Backoff schedules and the generic async retry helper."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff_delay(
    attempt: int,
    *,
    base_delay: float,
    multiplier: float = 2.0,
    max_delay: float | None = None,
) -> float:
    """Exponential backoff delay in seconds.

    delay = base_delay * multiplier^attempt, capped at max_delay.
    """
    delay = base_delay * (multiplier**attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def compute_ladder_delay(retry_number: int, ladder: Sequence[float]) -> float:
    """Pick the delay for the given 1-based retry from a fixed ladder.

    Retries past the end of the ladder reuse its last rung.
    """
    if not ladder:
        raise ValueError("Retry ladder must not be empty")
    index = min(max(retry_number - 1, 0), len(ladder) - 1)
    return ladder[index]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    should_retry: Callable[[BaseException], bool],
    base_delay: float = 1.0,
    max_delay: float = 5.0,
    name: str = "operation",
    before_retry: Callable[[], Awaitable[None]] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``attempts`` times.

    Only exceptions accepted by ``should_retry`` are retried; anything else,
    and the last failure, propagates unchanged. ``before_retry`` runs ahead
    of every retry (e.g. to re-establish a connection); its own failures are
    logged and do not stop the retry.
    """
    attempt = 1
    while True:
        try:
            result = await operation()
        except Exception as exc:
            if attempt >= attempts or not should_retry(exc):
                raise
            delay = compute_backoff_delay(
                attempt - 1, base_delay=base_delay, max_delay=max_delay
            )
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                name,
                attempt,
                attempts,
                delay,
                exc,
            )
            await sleep(delay)
            if before_retry is not None:
                try:
                    await before_retry()
                except Exception as reconnect_exc:
                    logger.warning(
                        "%s: pre-retry hook failed: %s", name, reconnect_exc
                    )
            attempt += 1
            continue
        if attempt > 1:
            logger.info("%s succeeded on attempt %d", name, attempt)
        return result
