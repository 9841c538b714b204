"""Tests for resource_scanner.utils.retry: backoff helper."""

from __future__ import annotations

from unittest import mock

import pytest

from resource_scanner.utils import errors, retry


class _Flaky:
    """Callable failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or RuntimeError("transient")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.fixture(autouse=True)
def no_sleep():
    with mock.patch.object(retry.asyncio, "sleep", new=mock.AsyncMock()) as sleep:
        yield sleep


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_success_first_try(self) -> None:
        fn = _Flaky(0)
        assert await retry.with_retry(fn) == "ok"
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self) -> None:
        fn = _Flaky(2)
        assert await retry.with_retry(fn, max_attempts=3) == "ok"
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_max_attempts_counts_first_call(self) -> None:
        fn = _Flaky(5)
        with pytest.raises(RuntimeError):
            await retry.with_retry(fn, max_attempts=3)
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_give_up_on_raises_immediately(self) -> None:
        fn = _Flaky(5, errors.PoolExhaustedError("gone"))
        with pytest.raises(errors.PoolExhaustedError):
            await retry.with_retry(fn, max_attempts=3, give_up_on=(errors.PoolExhaustedError,))
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_unlisted_error_not_retried(self) -> None:
        fn = _Flaky(5, KeyError("x"))
        with pytest.raises(KeyError):
            await retry.with_retry(fn, max_attempts=3, retry_on=(RuntimeError,))
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_backoff_grows(self, no_sleep: mock.AsyncMock) -> None:
        with mock.patch.object(retry.random, "random", return_value=0.5):
            with pytest.raises(RuntimeError):
                await retry.with_retry(_Flaky(5), max_attempts=3, initial_delay_ms=100)
        delays = [c.args[0] for c in no_sleep.await_args_list]
        assert delays == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_zero_delay_skips_sleep(self, no_sleep: mock.AsyncMock) -> None:
        await retry.with_retry(_Flaky(1), max_attempts=2, initial_delay_ms=0)
        no_sleep.assert_not_awaited()
