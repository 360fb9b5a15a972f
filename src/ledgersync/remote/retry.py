"""Retry logic with exponential backoff for remote API calls.

This module provides:
- RetryPolicy: bounded attempt counts per error kind
- retry_with_backoff: async exponential backoff honoring Retry-After
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from ledgersync.remote.errors import RateLimitedError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_RATE_LIMIT_RETRIES = 5
DEFAULT_MAX_NETWORK_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits for the two retryable error kinds.

    Attributes:
        max_rate_limit_retries: Retries after RateLimitedError.
        max_network_retries: Retries after TransientNetworkError.
        initial_backoff: First delay in seconds.
        max_backoff: Delay ceiling in seconds (also caps Retry-After).
        backoff_multiplier: Growth factor per attempt.
    """

    max_rate_limit_retries: int = DEFAULT_MAX_RATE_LIMIT_RETRIES
    max_network_retries: int = DEFAULT_MAX_NETWORK_RETRIES
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER

    def delay_for(self, attempt: int, retry_after: float | None = None) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_backoff)
        return min(self.initial_backoff * (self.backoff_multiplier**attempt), self.max_backoff)


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "request",
) -> T:
    """Run an async callable, retrying rate limits and transient failures.

    Rate-limit and network retries are counted separately, each against its
    own bound in the policy. Any other exception propagates immediately.

    Args:
        func: Zero-argument coroutine factory to execute.
        policy: Retry limits (defaults to RetryPolicy()).
        sleep: Awaitable sleep, replaceable in tests.
        description: Label used in log messages.

    Returns:
        Result of the callable.

    Raises:
        The last RateLimitedError/TransientNetworkError once its bound is hit.
    """
    policy = policy or RetryPolicy()
    rate_limited = 0
    network = 0

    while True:
        try:
            return await func()
        except RateLimitedError as e:
            if rate_limited >= policy.max_rate_limit_retries:
                logger.error(
                    "%s: rate limited, giving up after %d retries", description, rate_limited
                )
                raise
            delay = policy.delay_for(rate_limited, e.retry_after)
            rate_limited += 1
        except TransientNetworkError as e:
            if network >= policy.max_network_retries:
                logger.error("%s: %s, giving up after %d retries", description, e, network)
                raise
            delay = policy.delay_for(network)
            network += 1

        logger.warning(
            "%s failed (rate limited %d, network %d). Retrying in %.1fs...",
            description,
            rate_limited,
            network,
            delay,
        )
        await sleep(delay)
