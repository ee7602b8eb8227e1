"""Retry helpers with exponential backoff + jitter.

Framework-agnostic; the assessment service wraps its aggregate commands with
`retry_async` so optimistic-concurrency conflicts are retried a bounded number
of times before surfacing to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

R = TypeVar("R")

log = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retries with exponential backoff.

    Attributes:
        attempts: Maximum number of attempts (including the first try).
        base_delay: Initial delay between retries (seconds).
        max_delay: Upper bound for delay (seconds).
        jitter: Proportional jitter (0..1) added/subtracted to delay.
    """
    attempts: int = 3
    base_delay: float = 0.01  # seconds
    max_delay: float = 0.25
    jitter: float = 0.25  # 0..1 proportion added/subtracted


async def retry_async(
    fn: Callable[[], Awaitable[R]],
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> R:
    """Await `fn()` and retry on `retry_on` exceptions according to `config`.

    Exceptions outside `retry_on` propagate immediately. After the last
    attempt the final exception is re-raised unchanged.

    Args:
        fn: Zero-arg coroutine factory; called once per attempt.
        config: Retry policy.
        retry_on: Exception types eligible for retry.
        on_retry: Optional callback invoked with (attempt_number, exc) before sleeping.
    """
    delay = config.base_delay
    for attempt in range(1, config.attempts + 1):
        try:
            return await fn()
        except retry_on as e:
            if attempt >= config.attempts:
                raise
            if on_retry is not None:
                on_retry(attempt, e)
            log.warning("retry(%s/%s) after %s: %s", attempt, config.attempts, type(e).__name__, e)
            # full jitter around delay
            j = delay * config.jitter
            await asyncio.sleep(max(0.0, delay + random.uniform(-j, j)))
            delay = min(config.max_delay, delay * 2.0)
    raise RuntimeError("retry_async exhausted without result")
