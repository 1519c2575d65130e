"""Timeout + retry with jittered exponential backoff for marketplace calls."""

import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

from conf import RetryConf
from utils import log

from .errors import MarketplaceTransientError, RetriesExhaustedError

logger = log.get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, policy: RetryConf, rng: Callable[[], float] = random.random) -> float:
    """Delay after the *attempt*-th failure: exponential, capped, half of it jittered."""
    ceiling = min(policy.max_delay_seconds, policy.base_delay_seconds * (2 ** (attempt - 1)))
    return ceiling / 2 + rng() * ceiling / 2


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryConf,
    description: str,
    sleep: Optional[Sleep] = None,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run *operation* under ``policy.timeout_seconds`` per attempt.

    Timeouts and MarketplaceTransientError are retried up to
    ``policy.max_attempts`` attempts in total; anything else propagates
    immediately. When the attempts run out RetriesExhaustedError (a
    permanent error) is raised from the last failure.
    """
    sleep = sleep or asyncio.sleep
    last_error: Optional[Exception] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await asyncio.wait_for(operation(), timeout=policy.timeout_seconds)
        except asyncio.TimeoutError:
            last_error = MarketplaceTransientError(
                f"{description} timed out after {policy.timeout_seconds}s"
            )
        except MarketplaceTransientError as e:
            last_error = e

        if attempt < policy.max_attempts:
            delay = backoff_delay(attempt, policy, rng)
            logger.warning(
                f"{description} failed (attempt {attempt}/{policy.max_attempts}): "
                f"{last_error}; retrying in {delay:.2f}s"
            )
            await sleep(delay)

    raise RetriesExhaustedError(
        f"{description} failed after {policy.max_attempts} attempts: {last_error}",
        attempts=policy.max_attempts,
    ) from last_error
