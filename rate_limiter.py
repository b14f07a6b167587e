"""
Fixed-window rate limiting for the public endpoints.

The in-memory store is per process. Use the Redis store
(RATE_LIMIT_BACKEND=redis) to share counters between workers.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass

import config
import redis_helper

RATE_LIMIT_PRESETS = {
    "checkout": (5, 60),
    "products": (100, 60),
}


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }

    def retry_after(self, now) -> int:
        return max(0, math.ceil(self.reset_at - now))


class InMemoryRateLimitStore:
    SWEEP_EVERY = 1000

    def __init__(self):
        self._entries = {}
        self._lock = threading.Lock()
        self._calls = 0

    def _sweep(self, now):
        for key in [key for key, (_, reset_at) in self._entries.items() if reset_at <= now]:
            del self._entries[key]

    def increment(self, key, window_seconds, now):
        """Count a hit, returning (count, reset_at) for the current window."""
        with self._lock:
            self._calls += 1
            if self._calls % self.SWEEP_EVERY == 0:
                self._sweep(now)

            count, reset_at = self._entries.get(key, (0, 0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._entries[key] = (count, reset_at)
            return count, reset_at


class RedisRateLimitStore:
    def __init__(self, client=None):
        self.client = client

    def increment(self, key, window_seconds, now):
        result = redis_helper.redis_incr_window(f"ratelimit:{key}", window_seconds, client=self.client)
        if result is None:
            # Redis down: let the request through
            return 1, now + window_seconds
        count, ttl = result
        return count, now + ttl


class FixedWindowRateLimiter:
    def __init__(self, store, max_requests, window_seconds, clock=time.time, name="default"):
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self.name = name

    def hit(self, identifier) -> RateLimitResult:
        now = self.clock()
        count, reset_at = self.store.increment(f"{self.name}:{identifier}", self.window_seconds, now)
        if count > self.max_requests:
            logging.warning("Rate limit exceeded for %s on %s", identifier, self.name)
            return RateLimitResult(False, self.max_requests, 0, reset_at)
        return RateLimitResult(True, self.max_requests, self.max_requests - count, reset_at)


def get_client_identifier(headers, remote_addr=None) -> str:
    """Client IP as seen through Cloudflare, nginx or a generic proxy."""
    forwarded_for = headers.get("x-forwarded-for") or ""
    return (
        headers.get("cf-connecting-ip")
        or headers.get("x-real-ip")
        or forwarded_for.split(",")[0].strip()
        or remote_addr
        or "unknown"
    )


def build_store(backend=None):
    backend = (backend or config.RATE_LIMIT_BACKEND or "memory").lower()
    if backend == "redis":
        return RedisRateLimitStore()
    return InMemoryRateLimitStore()


def build_rate_limiter(preset, store=None, clock=time.time) -> FixedWindowRateLimiter:
    max_requests, window_seconds = RATE_LIMIT_PRESETS[preset]
    return FixedWindowRateLimiter(
        store or build_store(), max_requests, window_seconds, clock=clock, name=preset
    )
