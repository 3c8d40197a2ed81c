"""Unit tests for the sliding window rate limiter."""

import pytest

from connectors.definitions import RateLimitPolicy


KEY = ("inst_1", "send_vital_signs")


def policy(**overrides):
    values = {"enabled": True, "requests_per_minute": 3, "window_size": 60}
    values.update(overrides)
    return RateLimitPolicy(**values)


class TestRateLimiter:
    """Test window accounting, retry_after and slot release."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, rate_limiter):
        """Test the fourth call in a window is rejected."""
        decisions = [await rate_limiter.acquire(KEY, policy()) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert decisions[3].limit == "minute"

    @pytest.mark.asyncio
    async def test_retry_after_and_window_slide(self, rate_limiter, clock):
        """Test retry_after points at the oldest call leaving the window."""
        await rate_limiter.acquire(KEY, policy(requests_per_minute=1))
        clock.advance(20)

        rejected = await rate_limiter.acquire(KEY, policy(requests_per_minute=1))
        assert rejected.allowed is False
        assert rejected.retry_after == pytest.approx(40)

        clock.advance(40.5)
        assert (await rate_limiter.acquire(KEY, policy(requests_per_minute=1))).allowed is True

    @pytest.mark.asyncio
    async def test_burst_limit(self, rate_limiter, clock):
        """Test burst_limit bounds calls within one second."""
        burst = policy(requests_per_minute=100, burst_limit=2)

        assert (await rate_limiter.acquire(KEY, burst)).allowed
        assert (await rate_limiter.acquire(KEY, burst)).allowed
        rejected = await rate_limiter.acquire(KEY, burst)
        assert rejected.limit == "burst"

        clock.advance(1.01)
        assert (await rate_limiter.acquire(KEY, burst)).allowed

    @pytest.mark.asyncio
    async def test_endpoint_rate_limit_overrides_per_minute(self, rate_limiter):
        """Test the endpoint override replaces requests_per_minute."""
        decisions = [await rate_limiter.acquire(KEY, policy(requests_per_minute=100), 1) for _ in range(2)]

        assert [d.allowed for d in decisions] == [True, False]

    @pytest.mark.asyncio
    async def test_hour_limit(self, rate_limiter, clock):
        """Test the hourly window outlasts the minute window."""
        hourly = policy(requests_per_minute=10, requests_per_hour=2)
        await rate_limiter.acquire(KEY, hourly)
        clock.advance(120)
        await rate_limiter.acquire(KEY, hourly)
        clock.advance(120)

        rejected = await rate_limiter.acquire(KEY, hourly)

        assert rejected.limit == "hour"
        assert rejected.retry_after == pytest.approx(3600 - 240)

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, rate_limiter):
        """Test limits are per (instance, endpoint)."""
        single = policy(requests_per_minute=1)
        await rate_limiter.acquire(KEY, single)

        assert (await rate_limiter.acquire(("inst_2", "send_vital_signs"), single)).allowed
        assert (await rate_limiter.acquire(("inst_1", "other_endpoint"), single)).allowed

    @pytest.mark.asyncio
    async def test_disabled_policy_always_allows(self, rate_limiter):
        """Test a disabled policy admits everything and records nothing."""
        disabled = policy(enabled=False, requests_per_minute=1)

        for _ in range(5):
            assert (await rate_limiter.acquire(KEY, disabled)).allowed
        assert rate_limiter.usage(KEY, 60) == 0

    @pytest.mark.asyncio
    async def test_release_returns_slot(self, rate_limiter):
        """Test releasing a token frees its slot."""
        single = policy(requests_per_minute=1)
        decision = await rate_limiter.acquire(KEY, single)

        assert await rate_limiter.release(KEY, decision.token) is True
        assert (await rate_limiter.acquire(KEY, single)).allowed
        assert await rate_limiter.release(KEY, decision.token) is False


class TestKeyRetention:
    """Test the limiter does not keep state for idle or deleted keys."""

    @pytest.mark.asyncio
    async def test_release_of_last_slot_drops_key(self, rate_limiter):
        decision = await rate_limiter.acquire(KEY, policy())

        await rate_limiter.release(KEY, decision.token)

        assert len(rate_limiter) == 0
        assert len(rate_limiter._locks) == 0

    @pytest.mark.asyncio
    async def test_forget_drops_every_endpoint_of_instance(self, rate_limiter):
        await rate_limiter.acquire(KEY, policy())
        await rate_limiter.acquire(("inst_1", "other_endpoint"), policy())
        await rate_limiter.acquire(("inst_2", "send_vital_signs"), policy())

        assert rate_limiter.forget("inst_1") == 2
        assert len(rate_limiter) == 1
        assert rate_limiter.usage(KEY, 60) == 0

    @pytest.mark.asyncio
    async def test_expired_keys_swept(self, rate_limiter, clock):
        """Test keys idle past their widest window go on the next sweep."""
        for n in range(50):
            await rate_limiter.acquire((f"inst_{n}", "send_vital_signs"), policy())
        clock.advance(61)

        await rate_limiter.acquire(KEY, policy())

        assert len(rate_limiter) == 1
        assert len(rate_limiter._locks) == 1

    @pytest.mark.asyncio
    async def test_sweep_keeps_keys_inside_their_horizon(self, rate_limiter, clock):
        """Test an hourly window keeps its log after the minute has passed."""
        hourly = policy(requests_per_minute=10, requests_per_hour=1)
        await rate_limiter.acquire(("inst_2", "send_vital_signs"), hourly)
        clock.advance(120)

        await rate_limiter.acquire(KEY, policy())

        assert (await rate_limiter.acquire(("inst_2", "send_vital_signs"), hourly)).limit == "hour"
