"""Jittered exponential backoff for store connects and upstream reads."""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..config.settings import RetryConfig

logger = logging.getLogger(__name__)

T = TypeVar('T')

JITTER_FRACTION = 0.25


def compute_delay(delay: float, max_delay: float, jitter: bool) -> float:
    """Spread ``delay`` by up to JITTER_FRACTION either way, then clamp to [0, max_delay]."""
    if jitter:
        delay *= 1 + random.uniform(-JITTER_FRACTION, JITTER_FRACTION)
    return max(0.0, min(delay, max_delay))


def retry_delay(error: BaseException, delay: float, max_delay: float, jitter: bool) -> float:
    """Backoff delay for ``error``; a server ``retry_after`` hint is a floor that max_delay does not cap."""
    backoff = compute_delay(delay, max_delay, jitter)
    hint: Optional[float] = getattr(error, "retry_after", None)
    if hint:
        return max(backoff, float(hint))
    return backoff


async def exponential_backoff(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,)
) -> T:
    """
    Await ``func()`` until it succeeds or ``max_attempts`` is used up.

    Only ``exceptions`` are retried; anything else propagates at once. The
    last retryable error is re-raised unchanged.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    name = getattr(func, "__qualname__", repr(func))
    delay = initial_delay

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except exceptions as e:
            if attempt == max_attempts:
                logger.error(f"{name} gave up after {attempt} attempts: {e}")
                raise

            wait = retry_delay(e, delay, max_delay, jitter)
            logger.warning(f"{name} attempt {attempt}/{max_attempts} failed ({e}); next try in {wait:.2f}s")
            await asyncio.sleep(wait)
            delay *= backoff_factor


async def retry_with_config(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,)
) -> T:
    return await exponential_backoff(
        func,
        max_attempts=config.max_attempts,
        initial_delay=config.initial_backoff_seconds,
        max_delay=config.max_backoff_seconds,
        backoff_factor=config.backoff_multiplier,
        jitter=config.jitter,
        exceptions=exceptions
    )
