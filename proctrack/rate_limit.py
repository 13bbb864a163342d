"""
proctrack/rate_limit.py

Fixed-window rate limiting for mutating endpoints.

Windows are aligned to floor(now / window). The client key is `{route}:user:{id}` for an
authenticated caller and `{route}:ip:{remote addr}` otherwise.

Backends:
- RedisRateLimiter: INCR + PEXPIRE on the first hit of a window, PTTL for Retry-After.
  Shared across processes.
- InMemoryRateLimiter: per-process counters behind a lock (used when REDIS_URL is unset).
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Tuple

import redis
from flask import current_app, request
from flask_login import current_user

from .errors import RateLimited
from .utils import client_ip

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    ok: bool
    retry_after: int = 0


def _window_start(now: float, window_seconds: int) -> int:
    return int(now // window_seconds) * window_seconds


class InMemoryRateLimiter:
    """Per-process fixed-window counters."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[str, Tuple[int, int]] = {}
        self._lock = Lock()

    def allow(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        now = self._clock()
        start = _window_start(now, window_seconds)
        with self._lock:
            window, count = self._windows.get(key, (start, 0))
            if window != start:
                window, count = start, 0
            count += 1
            self._windows[key] = (window, count)

        if count > limit:
            retry_after = max(1, math.ceil(start + window_seconds - now))
            return RateLimitResult(False, retry_after)
        return RateLimitResult(True)

    def cleanup(self, max_age: int = 3600):
        """Remove counters whose window started more than max_age seconds ago."""
        now = self._clock()
        with self._lock:
            stale = [key for key, (window, _count) in self._windows.items() if now - window > max_age]
            for key in stale:
                del self._windows[key]


class RedisRateLimiter:
    """Shared fixed-window counters in Redis."""

    def __init__(self, client, namespace: str = "proctrack", clock: Callable[[], float] = time.time):
        self._client = client
        self._namespace = namespace
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisRateLimiter":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def allow(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        start = _window_start(self._clock(), window_seconds)
        bucket = f"{self._namespace}:rl:{key}:{start}"

        count = int(self._client.incr(bucket))
        if count == 1:
            self._client.pexpire(bucket, window_seconds * 1000)

        if count > limit:
            ttl_ms = self._client.pttl(bucket)
            retry_after = max(1, math.ceil(ttl_ms / 1000)) if ttl_ms and ttl_ms > 0 else window_seconds
            return RateLimitResult(False, retry_after)
        return RateLimitResult(True)

    def cleanup(self, max_age: int = 3600):
        # Buckets expire on their own (PEXPIRE).
        return None


def client_identity() -> str:
    """Throttling identity: the signed-in user, else the remote address."""
    if current_user.is_authenticated:
        return f"user:{current_user.get_id()}"
    return f"ip:{client_ip(request)}"


def enforce_rate_limit(route: str) -> None:
    """Count this request against `{route}:{client identity}`; raise RateLimited when over the limit."""
    if not current_app.config.get("RATE_LIMIT_ENABLED", True):
        return

    from .services import get_services

    key = f"{route}:{client_identity()}"
    result = get_services().rate_limiter.allow(
        key,
        current_app.config.get("RATE_LIMIT_MAX", 30),
        current_app.config.get("RATE_LIMIT_WINDOW_SECONDS", 60),
    )
    if not result.ok:
        logger.warning("Rate limit exceeded for %s", key)
        raise RateLimited(result.retry_after)
