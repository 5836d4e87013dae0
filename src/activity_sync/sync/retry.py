"""Bounded retry for provider calls.

Only RateLimited and TransientError are retried.  Every other error,
CredentialError included, propagates on the first attempt.  The concurrency
semaphore is held for the duration of one attempt, never while sleeping.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from src.activity_sync.config_loader import RetryConfig
from src.activity_sync.errors import RateLimited, TransientError

logger = logging.getLogger("activity_sync.sync.retry")

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryConfig,
    semaphore: asyncio.Semaphore | None = None,
    sleep: Sleep = asyncio.sleep,
    describe: str = "provider call",
) -> T:
    """Run ``fn`` with bounded exponential backoff.

    Args:
        fn:        Zero-argument coroutine factory; called once per attempt.
        policy:    Attempts and delays.
        semaphore: Optional limiter acquired around each attempt.
        sleep:     Injected sleep (tests pass a no-op).
        describe:  Label used in log lines.

    Returns:
        Whatever ``fn`` returns on the first successful attempt.

    Raises:
        RateLimited / TransientError: After the last attempt fails.
        Any other exception from ``fn``: immediately.
    """
    attempt = 0
    while True:
        try:
            if semaphore is None:
                return await fn()
            async with semaphore:
                return await fn()
        except (RateLimited, TransientError) as exc:
            attempt += 1
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed after %d attempts: %s", describe, attempt, exc
                )
                raise
            delay = policy.delay(attempt - 1, getattr(exc, "retry_after", None))
            logger.info(
                "%s: %s (attempt %d/%d), retrying in %.2fs",
                describe, exc, attempt, policy.max_attempts, delay,
            )
            await sleep(delay)
