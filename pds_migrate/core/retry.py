"""Request-level retry for rate-limited remote calls."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from ..models.enums import ErrorKind
from .exceptions import MigrationError

logger = structlog.get_logger()

T = TypeVar("T")

MAX_RATE_LIMIT_RETRIES = 4
JITTER_FRACTION = 0.25


def rate_limit_delay(
    attempt: int,
    retry_after: float | None,
    *,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt`` (0-based).

    With a server hint: ``retry_after`` plus up to 25% of it as jitter.
    Without one: exponential from ``base_delay``, capped, plus up to 25% jitter.
    """
    if retry_after is not None and retry_after > 0:
        return retry_after + rng() * JITTER_FRACTION * retry_after
    delay = min(base_delay * (2**attempt), max_delay)
    return delay + rng() * JITTER_FRACTION * delay


async def with_rate_limit_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str = "operation",
    max_retries: int = MAX_RATE_LIMIT_RETRIES,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run ``operation``, retrying only rate-limit failures.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        name: Operation name for logs
        max_retries: Retries after the initial call
        base_delay: Backoff base when the server gave no retry-after hint
        max_delay: Backoff ceiling when the server gave no hint
        sleep: Awaitable sleep, injectable for tests
        rng: Uniform [0, 1) source for jitter

    Returns:
        The operation's result

    Raises:
        MigrationError: The last rate-limit error once retries are exhausted, or
            any other error immediately
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except MigrationError as e:
            if e.kind is not ErrorKind.RATE_LIMIT or attempt >= max_retries:
                raise
            delay = rate_limit_delay(
                attempt, e.retry_after, base_delay=base_delay, max_delay=max_delay, rng=rng
            )
            attempt += 1
            logger.warning(
                "Rate limited, backing off",
                operation=name,
                attempt=attempt,
                max_retries=max_retries,
                retry_after=e.retry_after,
                delay=round(delay, 2),
            )
            await sleep(delay)
