"""Tests for the ingress rate limiter."""

import asyncio
from types import SimpleNamespace

import pytest

from apkshield.api import security
from apkshield.api.security import RateLimiter, check_rate_limit
from apkshield.config import settings
from apkshield.errors import RateLimitExceededError


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def time(self):
        return self.now


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(security, "time", fake)
    return fake


def fake_request(host="10.0.0.1"):
    return SimpleNamespace(client=SimpleNamespace(host=host), state=SimpleNamespace())


class TestRateLimiter:
    def test_allows_up_to_limit(self, clock):
        limiter = RateLimiter()
        results = [limiter.is_allowed("ip", limit=3, window=60) for _ in range(4)]
        assert results == [(True, 2), (True, 1), (True, 0), (False, 0)]

    def test_rejected_requests_are_not_counted(self, clock):
        limiter = RateLimiter()
        for _ in range(2):
            limiter.is_allowed("ip", limit=2, window=60)
        for _ in range(5):
            assert limiter.is_allowed("ip", limit=2, window=60)[0] is False

        clock.now += 60
        assert limiter.is_allowed("ip", limit=2, window=60) == (True, 1)

    def test_window_slides(self, clock):
        limiter = RateLimiter()
        limiter.is_allowed("ip", limit=2, window=60)
        clock.now += 30
        limiter.is_allowed("ip", limit=2, window=60)
        assert limiter.is_allowed("ip", limit=2, window=60)[0] is False

        # First request leaves the window, second is still inside
        clock.now += 30
        assert limiter.is_allowed("ip", limit=2, window=60) == (True, 0)
        assert limiter.is_allowed("ip", limit=2, window=60)[0] is False

    def test_clients_are_independent(self, clock):
        limiter = RateLimiter()
        assert limiter.is_allowed("a", limit=1, window=60)[0] is True
        assert limiter.is_allowed("a", limit=1, window=60)[0] is False
        assert limiter.is_allowed("b", limit=1, window=60)[0] is True

    def test_retry_after_counts_down(self, clock):
        limiter = RateLimiter()
        limiter.is_allowed("ip", limit=1, window=60)
        clock.now += 15.5
        assert limiter.get_retry_after_ms("ip", window=60) == 44500

    def test_retry_after_without_history(self, clock):
        assert RateLimiter().get_retry_after_ms("nobody", window=60) == 0

    def test_expired_client_is_forgotten(self, clock):
        limiter = RateLimiter()
        limiter.is_allowed("ip", limit=1, window=60)
        clock.now += 60
        assert limiter.get_retry_after_ms("ip", window=60) == 0
        assert limiter.tracked_clients == 0

    def test_retry_after_lookup_does_not_track_client(self, clock):
        limiter = RateLimiter()
        limiter.get_retry_after_ms("stranger", window=60)
        assert limiter.tracked_clients == 0

    def test_idle_clients_swept(self, clock):
        limiter = RateLimiter()
        for i in range(50):
            limiter.is_allowed(f"10.0.0.{i}", limit=5, window=60)
        assert limiter.tracked_clients == 50

        clock.now += 61
        limiter.is_allowed("10.0.1.1", limit=5, window=60)
        assert limiter.tracked_clients == 1

    def test_reset(self, clock):
        limiter = RateLimiter()
        limiter.is_allowed("ip", limit=1, window=60)
        limiter.reset()
        assert limiter.is_allowed("ip", limit=1, window=60)[0] is True


class TestCheckRateLimit:
    @pytest.fixture(autouse=True)
    def fresh_limiter(self, monkeypatch, clock):
        limiter = RateLimiter()
        monkeypatch.setattr(security, "rate_limiter", limiter)
        monkeypatch.setattr(settings, "rate_limit_requests", 2)
        monkeypatch.setattr(settings, "rate_limit_window", 60)
        return limiter

    def test_sets_state_and_raises_when_exhausted(self, clock):
        request = fake_request()
        asyncio.run(check_rate_limit(request))
        assert request.state.rate_limit_remaining == 1
        assert request.state.rate_limit_limit == 2
        asyncio.run(check_rate_limit(request))

        clock.now += 10
        with pytest.raises(RateLimitExceededError) as exc_info:
            asyncio.run(check_rate_limit(request))
        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after_ms == 50000

    def test_disabled_when_limit_is_zero(self, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_requests", 0)
        request = fake_request()
        for _ in range(20):
            asyncio.run(check_rate_limit(request))
        assert not hasattr(request.state, "rate_limit_remaining")

    def test_missing_client_shares_one_bucket(self):
        request = SimpleNamespace(client=None, state=SimpleNamespace())
        asyncio.run(check_rate_limit(request))
        asyncio.run(check_rate_limit(request))
        with pytest.raises(RateLimitExceededError):
            asyncio.run(check_rate_limit(request))
