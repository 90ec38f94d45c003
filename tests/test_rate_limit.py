"""Tests for the fixed-window limiter and its counter store."""

from unittest.mock import AsyncMock

import pytest

from lawmakers_auth.config import Settings
from lawmakers_auth.service.rate_limit import (
    RATE_LIMITS,
    RateLimiter,
    RateLimitRule,
    hash_email,
    rate_keys,
)
from lawmakers_auth.storage.redis_cache import MemoryCache


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(MemoryCache(clock=clock))


def test_default_rules():
    assert RATE_LIMITS["signup"] == RateLimitRule(3, 3600)
    assert RATE_LIMITS["login"] == RateLimitRule(5, 900)
    assert RATE_LIMITS["resend"] == RateLimitRule(3, 3600)


def test_keys_hash_the_email():
    keys = rate_keys("203.0.113.9", "login", "Someone@Example.com")
    assert keys[0] == "rate:ip:203.0.113.9:login"
    assert keys[1] == f"rate:email:{hash_email('someone@example.com')}:login"
    assert "someone" not in keys[1]
    assert len(hash_email("someone@example.com")) == 16


def test_keys_without_email():
    assert rate_keys("", "signup") == ["rate:ip:unknown:signup"]


async def test_login_allows_five_then_blocks(limiter):
    for attempt in range(5):
        decision = await limiter.hit("203.0.113.9", "login", "a@example.com")
        assert decision.allowed, attempt
        assert decision.remaining == 4 - attempt
    blocked = await limiter.hit("203.0.113.9", "login", "a@example.com")
    assert not blocked.allowed
    assert blocked.remaining == 0
    assert blocked.reset_in == 900


async def test_email_bucket_spans_ips(limiter):
    for i in range(5):
        assert (await limiter.hit(f"198.51.100.{i}", "login", "a@example.com")).allowed
    assert not (await limiter.hit("198.51.100.99", "login", "a@example.com")).allowed
    assert (await limiter.hit("198.51.100.99", "login", "b@example.com")).allowed


async def test_ip_bucket_spans_emails(limiter):
    for i in range(3):
        assert (await limiter.hit("203.0.113.9", "signup", f"user{i}@example.com")).allowed
    assert not (await limiter.hit("203.0.113.9", "signup", "fresh@example.com")).allowed


async def test_actions_are_independent(limiter):
    for _ in range(3):
        await limiter.hit("203.0.113.9", "signup", "a@example.com")
    assert (await limiter.hit("203.0.113.9", "login", "a@example.com")).allowed


async def test_window_expiry_resets_counters(limiter, clock):
    for _ in range(3):
        await limiter.hit("203.0.113.9", "resend", "a@example.com")
    assert not (await limiter.hit("203.0.113.9", "resend", "a@example.com")).allowed
    clock.advance(3601)
    assert (await limiter.hit("203.0.113.9", "resend", "a@example.com")).allowed


async def test_window_starts_at_first_hit(limiter, clock):
    await limiter.hit("203.0.113.9", "signup")
    clock.advance(3000)
    await limiter.hit("203.0.113.9", "signup")
    await limiter.hit("203.0.113.9", "signup")
    clock.advance(601)
    # the window opened by the first hit has lapsed
    assert (await limiter.hit("203.0.113.9", "signup")).allowed


async def test_denied_attempts_are_not_counted(clock):
    cache = MemoryCache(clock=clock)
    limiter = RateLimiter(cache)
    for _ in range(8):
        await limiter.hit("203.0.113.9", "login")
    assert await cache.get_counters(["rate:ip:203.0.113.9:login"]) == [5]


async def test_fails_open_when_store_is_down():
    store = AsyncMock()
    store.get_counters.side_effect = ConnectionError("redis down")
    store.increment_counters.side_effect = ConnectionError("redis down")
    limiter = RateLimiter(store)
    for _ in range(10):
        assert (await limiter.hit("203.0.113.9", "login", "a@example.com")).allowed


async def test_unknown_action_is_not_limited(limiter):
    for _ in range(20):
        assert (await limiter.hit("203.0.113.9", "export")).allowed


async def test_invalid_window_falls_back(clock):
    limiter = RateLimiter(MemoryCache(clock=clock), {"login": RateLimitRule(1, 0)})
    assert (await limiter.hit("203.0.113.9", "login")).allowed
    assert not (await limiter.hit("203.0.113.9", "login")).allowed
    clock.advance(61)
    assert (await limiter.hit("203.0.113.9", "login")).allowed


async def test_from_settings_uses_configured_limits(clock):
    settings = Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        login_rate_limit=2,
        login_rate_window_seconds=30,
    )
    limiter = RateLimiter.from_settings(MemoryCache(clock=clock), settings)
    assert limiter.rules["login"] == RateLimitRule(2, 30)
    await limiter.hit("203.0.113.9", "login")
    await limiter.hit("203.0.113.9", "login")
    assert not (await limiter.hit("203.0.113.9", "login")).allowed


def test_fullwidth_variants_share_the_email_bucket():
    plain = rate_keys("203.0.113.9", "login", "victim@example.com")[1]
    fullwidth = rate_keys("203.0.113.9", "login", "ｖictim@example.com")[1]
    assert plain == fullwidth


async def test_fullwidth_variants_cannot_extend_login_budget(limiter):
    for i in range(5):
        await limiter.hit(f"198.51.100.{i}", "login", "victim@example.com")
    blocked = await limiter.hit("198.51.100.50", "login", "ｖictim@Example.com")
    assert not blocked.allowed
