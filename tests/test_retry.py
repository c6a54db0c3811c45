"""Tests for the shared retry policy."""

import asyncio

import pytest
from notion_sync.errors import NotionAPIError, RateLimited
from notion_sync.retry import RetryPolicy, is_rate_limited


def _recording_policy(**kwargs):
    delays: list[float] = []

    async def fake_sleep(delay):
        delays.append(delay)

    return RetryPolicy(sleep=fake_sleep, **kwargs), delays


class TestIsRateLimited:
    """Tests for is_rate_limited predicate."""

    def test_typed_error(self):
        assert is_rate_limited(RateLimited())

    def test_code_attribute(self):
        error = NotionAPIError("slow down", status=400, code="rate_limited")
        assert is_rate_limited(error)

    def test_message_substring(self):
        assert is_rate_limited(RuntimeError("You have been Rate Limited"))

    def test_other_errors(self):
        assert not is_rate_limited(NotionAPIError("not found", status=404, code="object_not_found"))
        assert not is_rate_limited(ValueError("bad"))


class TestRetryDelays:
    """Tests for RetryPolicy.delay_for."""

    def test_exponential_until_cap(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=15.0)
        assert [policy.delay_for(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 15.0, 15.0]

    def test_retry_after_raises_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=15.0)
        assert policy.delay_for(0, retry_after=5.0) == 5.0

    def test_retry_after_still_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=15.0)
        assert policy.delay_for(0, retry_after=60.0) == 15.0


class TestRetryCall:
    """Tests for RetryPolicy.call."""

    def test_returns_first_success(self):
        policy, delays = _recording_policy()

        async def ok():
            return 42

        assert asyncio.run(policy.call(ok)) == 42
        assert delays == []

    def test_retries_rate_limits_then_succeeds(self):
        policy, delays = _recording_policy()
        attempts = 0

        async def flaky():
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise RateLimited()
            return "done"

        assert asyncio.run(policy.call(flaky)) == "done"
        assert attempts == 3
        assert delays == [1.0, 2.0]

    def test_gives_up_after_ceiling(self):
        policy, delays = _recording_policy(max_retries=6)
        attempts = 0

        async def always_limited():
            nonlocal attempts
            attempts += 1
            raise RateLimited()

        with pytest.raises(RateLimited):
            asyncio.run(policy.call(always_limited))
        assert attempts == 7
        assert len(delays) == 6

    def test_other_errors_propagate_immediately(self):
        policy, delays = _recording_policy()
        attempts = 0

        async def broken():
            nonlocal attempts
            attempts += 1
            raise NotionAPIError("validation failed", status=400, code="validation_error")

        with pytest.raises(NotionAPIError):
            asyncio.run(policy.call(broken))
        assert attempts == 1
        assert delays == []
