"""Tests for invoice_reminders.rate_limit -- fixed-window limiter."""

import pytest

from invoice_reminders.config import RateLimitSettings
from invoice_reminders.rate_limit import RateLimiter, RateLimitExceeded


class _Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRateLimiter:

    def test_allows_up_to_limit(self):
        limiter = RateLimiter(max_requests=3, window_seconds=60, clock=_Clock())
        remaining = [limiter.hit("run:a").remaining for _ in range(3)]
        assert remaining == [2, 1, 0]
        assert not limiter.hit("run:a").allowed

    def test_window_resets(self):
        clock = _Clock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.check("k")
        clock.now += 60
        assert limiter.check("k").allowed

    def test_keys_are_independent(self):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=_Clock())
        limiter.check("run:a")
        limiter.check("run:b")

    def test_exceeded_carries_retry_after(self):
        clock = _Clock()
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock)
        limiter.check("run:a")
        clock.now += 15
        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check("run:a")
        assert exc_info.value.retry_after == pytest.approx(45)
        assert exc_info.value.key == "run:a"
        assert "run:a" in str(exc_info.value)

    def test_instances_do_not_share_state(self):
        first = RateLimiter(max_requests=1, clock=_Clock())
        second = RateLimiter(max_requests=1, clock=_Clock())
        first.check("a")
        second.check("a")

    def test_from_settings(self):
        limiter = RateLimiter.from_settings(RateLimitSettings(max_requests=5, window_seconds=10))
        assert (limiter.max_requests, limiter.window_seconds) == (5, 10)
