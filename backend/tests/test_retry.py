"""
Tests for the bounded retry combinator.
"""
import asyncio

import pytest

from atlas.core.retry import retry_until, wait_or_cancel


def scripted(results):
    calls = []

    async def probe():
        calls.append(len(calls) + 1)
        result = results.pop(0) if results else False
        if isinstance(result, Exception):
            raise result
        return result

    return probe, calls


class TestRetryUntil:

    @pytest.mark.asyncio
    async def test_stops_on_first_success(self):
        probe, calls = scripted([False, True, True])

        outcome = await retry_until(probe, max_attempts=5, interval_seconds=0)

        assert outcome.succeeded is True
        assert outcome.attempts == 2
        assert calls == [1, 2]

    @pytest.mark.asyncio
    async def test_budget_exhausted(self):
        probe, calls = scripted([])

        outcome = await retry_until(probe, max_attempts=3, interval_seconds=0)

        assert outcome.succeeded is False
        assert outcome.attempts == 3
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_exceptions_count_as_failures(self):
        probe, calls = scripted([ConnectionError("refused"), True])

        outcome = await retry_until(probe, max_attempts=3, interval_seconds=0)

        assert outcome.succeeded is True
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_at_least_one_attempt(self):
        probe, calls = scripted([True])

        outcome = await retry_until(probe, max_attempts=0, interval_seconds=0)

        assert outcome.succeeded is True
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_cancel_before_start(self):
        probe, calls = scripted([True])
        cancel = asyncio.Event()
        cancel.set()

        outcome = await retry_until(probe, max_attempts=3, interval_seconds=0, cancel=cancel)

        assert outcome.cancelled is True
        assert outcome.attempts == 0
        assert calls == []

    @pytest.mark.asyncio
    async def test_cancel_cuts_interval_short(self):
        probe, calls = scripted([])
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        outcome = await asyncio.wait_for(
            retry_until(probe, max_attempts=10, interval_seconds=30, cancel=cancel),
            timeout=2,
        )

        assert outcome.cancelled is True
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_abort_ends_early(self):
        probe, calls = scripted([])

        async def abort():
            return len(calls) >= 2

        outcome = await retry_until(probe, max_attempts=10, interval_seconds=0, abort=abort)

        assert outcome.aborted is True
        assert outcome.attempts == 2


class TestWaitOrCancel:

    @pytest.mark.asyncio
    async def test_plain_sleep(self):
        assert await wait_or_cancel(0) is False

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        cancel = asyncio.Event()
        cancel.set()

        assert await wait_or_cancel(30, cancel) is True

    @pytest.mark.asyncio
    async def test_times_out(self):
        assert await wait_or_cancel(0.01, asyncio.Event()) is False
