"""
Fixed-window rate limiter.

One instance is created per dispatcher (or per test) and holds its own
counters; nothing lives at module level.  Keys are free-form strings such
as ``"run:<owner_id>"``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from .config import RateLimitSettings


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimitExceeded(Exception):
    """Too many requests for a key within the current window."""

    def __init__(self, key: str, decision: RateLimitDecision, now: float) -> None:
        self.key = key
        self.decision = decision
        self.retry_after = max(0.0, decision.reset_at - now)
        super().__init__(f"Rate limit exceeded for {key}; retry in {self.retry_after:.0f}s")


class RateLimiter:
    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[int, float]] = {}   # key -> (count, reset_at)

    @classmethod
    def from_settings(cls, settings: RateLimitSettings) -> "RateLimiter":
        return cls(settings.max_requests, settings.window_seconds)

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request against ``key``."""
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + self.window_seconds
            if count >= self.max_requests:
                return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at)
            count += 1
            self._windows[key] = (count, reset_at)
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_requests - count,
                reset_at=reset_at,
            )

    def check(self, key: str) -> RateLimitDecision:
        """Like hit(), but raise RateLimitExceeded when over the limit."""
        decision = self.hit(key)
        if not decision.allowed:
            raise RateLimitExceeded(key, decision, self._clock())
        return decision
