"""Tests for retry_with_backoff."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

import pytest

from ledgersync.remote.errors import (
    NotFoundError,
    RateLimitedError,
    TransientNetworkError,
    ValidationError,
)
from ledgersync.remote.retry import RetryPolicy, retry_with_backoff


class Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)


def failing(errors: list[Exception], result: str = "ok") -> Callable[[], Awaitable[str]]:
    """Coroutine factory raising the given errors in order, then succeeding."""
    calls = iter(errors)

    async def func() -> str:
        error = next(calls, None)
        if error is not None:
            raise error
        return result

    return func


class TestRetryPolicy:
    """Tests for RetryPolicy.delay_for."""

    def test_exponential_growth(self) -> None:
        """Delays double until the ceiling."""
        policy = RetryPolicy(initial_backoff=1.0, max_backoff=5.0)
        assert [policy.delay_for(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_retry_after_wins_but_is_capped(self) -> None:
        """Server-provided delays are used, within the ceiling."""
        policy = RetryPolicy(max_backoff=30.0)
        assert policy.delay_for(0, retry_after=7) == 7
        assert policy.delay_for(0, retry_after=120) == 30.0
        assert policy.delay_for(0, retry_after=-1) == 0.0


class TestRetryWithBackoff:
    """Tests for retry_with_backoff."""

    @pytest.mark.asyncio
    async def test_success_without_retry(self) -> None:
        """A successful call is not retried."""
        recorder = Recorder()
        assert await retry_with_backoff(failing([]), sleep=recorder.sleep) == "ok"
        assert recorder.delays == []

    @pytest.mark.asyncio
    async def test_rate_limit_then_success(self) -> None:
        """429s are retried using Retry-After."""
        recorder = Recorder()
        func = failing([RateLimitedError(retry_after=3), RateLimitedError(retry_after=1)])

        assert await retry_with_backoff(func, sleep=recorder.sleep) == "ok"
        assert recorder.delays == [3, 1]

    @pytest.mark.asyncio
    async def test_network_retries_bounded(self) -> None:
        """Transient failures give up after max_network_retries."""
        recorder = Recorder()
        policy = RetryPolicy(max_network_retries=2, initial_backoff=0.5)
        func = failing([TransientNetworkError("reset")] * 5)

        with pytest.raises(TransientNetworkError):
            await retry_with_backoff(func, policy, sleep=recorder.sleep)
        assert recorder.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_bounds_are_counted_per_kind(self) -> None:
        """Rate limits do not use up the network retry budget."""
        recorder = Recorder()
        policy = RetryPolicy(max_rate_limit_retries=2, max_network_retries=1)
        func = failing(
            [
                RateLimitedError(retry_after=1),
                TransientNetworkError("reset"),
                RateLimitedError(retry_after=1),
            ]
        )

        assert await retry_with_backoff(func, policy, sleep=recorder.sleep) == "ok"
        assert len(recorder.delays) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [ValidationError("bad"), NotFoundError("gone"), RuntimeError("bug")]
    )
    async def test_other_errors_propagate_immediately(self, error: Exception) -> None:
        """Non-retryable errors are raised on the first attempt."""
        recorder = Recorder()

        with pytest.raises(type(error)):
            await retry_with_backoff(failing([error]), sleep=recorder.sleep)
        assert recorder.delays == []
