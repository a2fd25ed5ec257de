"""Tests for the per-route fixed-window rate limiter."""

from unittest.mock import patch

import pytest
from limits import parse
from limits.aio.storage import MemoryStorage

from storeguard.core.config import settings
from storeguard.services.rate_limiter import (
    POLICIES,
    RATE_LIMITED_REASON,
    Allowed,
    Denied,
    RateLimiter,
    async_storage_from_uri,
    rate_limit_key,
)

_START = 1_700_000_000.0
_POLICY = "10/15minute"
_KEY = "203.0.113.7:/verify-email"


@pytest.fixture
def clock():
    """Mutable wall clock shared by the limiter and its memory store."""
    now = [_START]
    with patch("time.time", side_effect=lambda: now[0]):
        yield now


@pytest.fixture
def limiter() -> RateLimiter:
    return RateLimiter(MemoryStorage())


class TestRateLimitKey:
    """Keys combine client address and route."""

    def test_key_format(self):
        assert rate_limit_key("198.51.100.2", "/login") == "198.51.100.2:/login"


class TestAsyncStorageFromUri:
    """Configured URIs resolve to the async limits backends."""

    def test_memory_uri(self):
        assert isinstance(async_storage_from_uri("memory://"), MemoryStorage)

    def test_already_async_uri(self):
        assert isinstance(async_storage_from_uri("async+memory://"), MemoryStorage)


class TestFixedWindow:
    """Counting, denial and reset inside a fixed window."""

    async def test_allows_up_to_limit(self, clock, limiter):
        decisions = [await limiter.check(_KEY, _POLICY) for _ in range(10)]

        assert all(isinstance(d, Allowed) for d in decisions)
        assert [d.remaining for d in decisions] == list(range(9, -1, -1))
        assert decisions[0].limit == 10

    async def test_denies_past_limit(self, clock, limiter):
        for _ in range(10):
            await limiter.check(_KEY, _POLICY)
        clock[0] += 60

        decision = await limiter.check(_KEY, _POLICY)

        assert isinstance(decision, Denied)
        assert decision.limit == 10
        assert decision.reason == RATE_LIMITED_REASON
        # Window opened at the first hit: 15 minutes minus the minute elapsed
        assert decision.retry_after == 14 * 60
        assert decision.reset_at == int(_START + 15 * 60)

    async def test_window_resets_after_expiry(self, clock, limiter):
        for _ in range(11):
            await limiter.check(_KEY, _POLICY)
        clock[0] += 16 * 60

        decision = await limiter.check(_KEY, _POLICY)

        assert isinstance(decision, Allowed)
        assert decision.remaining == 9

    async def test_retry_after_is_at_least_one_second(self, clock, limiter):
        for _ in range(10):
            await limiter.check(_KEY, _POLICY)
        clock[0] += 15 * 60 - 0.2

        decision = await limiter.check(_KEY, _POLICY)

        assert isinstance(decision, Denied)
        assert decision.retry_after == 1

    async def test_keys_are_independent(self, clock, limiter):
        for _ in range(10):
            await limiter.check(_KEY, _POLICY)

        other_ip = await limiter.check("203.0.113.8:/verify-email", _POLICY)
        other_route = await limiter.check("203.0.113.7:/login", _POLICY)

        assert isinstance(other_ip, Allowed)
        assert isinstance(other_route, Allowed)

    async def test_accepts_parsed_policy(self, clock, limiter):
        item = parse("1/minute")

        assert isinstance(await limiter.check(_KEY, item), Allowed)
        assert isinstance(await limiter.check(_KEY, item), Denied)

    async def test_reset_clears_counters(self, clock, limiter):
        for _ in range(11):
            await limiter.check(_KEY, _POLICY)

        await limiter.reset()

        assert isinstance(await limiter.check(_KEY, _POLICY), Allowed)


class TestDegradedModes:
    """Disabled limiter and store failures both allow the request."""

    async def test_disabled_limiter_always_allows(self, clock):
        disabled = RateLimiter(MemoryStorage(), enabled=False)

        decisions = [await disabled.check(_KEY, "1/minute") for _ in range(5)]

        assert all(isinstance(d, Allowed) for d in decisions)
        assert decisions[-1].remaining == 1

    async def test_store_failure_fails_open(self, clock):
        storage = MemoryStorage()
        broken = RateLimiter(storage)

        with patch.object(storage, "incr", side_effect=ConnectionError("store down")):
            decision = await broken.check(_KEY, "1/minute")

        assert isinstance(decision, Allowed)
        assert decision.remaining == 1
        assert decision.reset_at == int(_START + 60)


class TestPolicies:
    """Every sensitive route has a configured policy."""

    def test_routes_map_to_settings(self):
        assert POLICIES["/verify-email"] == settings.rate_limit_verify_email
        assert POLICIES["/login"] == settings.rate_limit_login
        assert set(POLICIES) == {
            "/verify-email",
            "/send-email-verification",
            "/forgot-password",
            "/reset-password",
            "/verify-reset-token",
            "/login",
            "/register",
        }

    @pytest.mark.parametrize("route", sorted(POLICIES))
    def test_policies_parse(self, route):
        assert parse(POLICIES[route]).amount > 0

    def test_default_verify_email_policy(self):
        item = parse(settings.rate_limit_verify_email)
        assert item.amount == 10
        assert item.get_expiry() == 15 * 60
