"""
Service wiring: shared stores and collaborators built once per app.

create_app() calls init_services(app); request handlers use get_services().
Tests replace individual members (notifier, clock) on the returned object.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from flask import Flask, current_app

from .idempotency import DatabaseIdempotencyStore, RedisIdempotencyStore
from .notifications import build_notifier
from .rate_limit import InMemoryRateLimiter, RedisRateLimiter
from .utils import utcnow

logger = logging.getLogger(__name__)

EXTENSION_KEY = "proctrack"


@dataclass
class Services:
    rate_limiter: Any
    idempotency: Any
    notifier: Any
    clock: Callable[[], datetime] = field(default=utcnow)


def init_services(app: Flask) -> Services:
    ttl = app.config.get("IDEMPOTENCY_TTL_SECONDS", 24 * 60 * 60)
    redis_url = app.config.get("REDIS_URL")

    if redis_url:
        rate_limiter = RedisRateLimiter.from_url(redis_url)
        idempotency = RedisIdempotencyStore.from_url(redis_url, ttl_seconds=ttl)
        logger.info("Rate limiting and idempotency backed by Redis")
    else:
        rate_limiter = InMemoryRateLimiter()
        idempotency = DatabaseIdempotencyStore(ttl_seconds=ttl)

    services = Services(
        rate_limiter=rate_limiter,
        idempotency=idempotency,
        notifier=build_notifier(app.config),
    )
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
