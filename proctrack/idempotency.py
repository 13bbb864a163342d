"""
proctrack/idempotency.py

Idempotency store: remembers which `{action}:{caseId}:{clientKey}` keys were consumed so a
retried request is answered with DuplicateRequest instead of repeating its side effects.

Backends:
- DatabaseIdempotencyStore (default): one IdempotencyKey row per key, inserted inside a
  SAVEPOINT of the request transaction. The primary key makes check-and-set atomic across
  processes. A request that fails after consuming its key rolls back, which releases it.
- RedisIdempotencyStore (REDIS_URL set): SET NX EX. Keys are not released on failure.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

import redis
from sqlalchemy.exc import IntegrityError

from .extensions import db
from .models import IdempotencyKey
from .utils import utcnow

logger = logging.getLogger(__name__)

MAX_CLIENT_KEY_LENGTH = 200


def idempotency_key(action: str, case_id, client_key: str) -> str:
    return f"{action}:{case_id}:{client_key.strip()[:MAX_CLIENT_KEY_LENGTH]}"


class DatabaseIdempotencyStore:
    def __init__(self, ttl_seconds: int = 24 * 60 * 60):
        self.ttl_seconds = ttl_seconds

    def consume(self, key: str) -> bool:
        """Return True the first time `key` is seen, False for a duplicate."""
        db.session.flush()
        if db.session.get(IdempotencyKey, key) is not None:
            logger.info("Duplicate idempotency key %s", key)
            return False
        # Concurrent first uses race on the primary key; the loser lands here.
        try:
            with db.session.begin_nested():
                db.session.add(IdempotencyKey(key=key))
        except IntegrityError:
            logger.info("Duplicate idempotency key %s", key)
            return False
        return True

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete keys older than the TTL. Returns the number of rows removed."""
        cutoff = (now or utcnow()) - timedelta(seconds=self.ttl_seconds)
        removed = IdempotencyKey.query.filter(IdempotencyKey.created_at < cutoff).delete(
            synchronize_session=False
        )
        db.session.commit()
        if removed:
            logger.info("Purged %s expired idempotency keys", removed)
        return removed


class RedisIdempotencyStore:
    def __init__(self, client, ttl_seconds: int = 24 * 60 * 60, namespace: str = "proctrack"):
        self._client = client
        self.ttl_seconds = ttl_seconds
        self._namespace = namespace

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisIdempotencyStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._namespace}:idem:{key}"

    def consume(self, key: str) -> bool:
        created = self._client.set(self._key(key), "1", nx=True, ex=self.ttl_seconds)
        if not created:
            logger.info("Duplicate idempotency key %s", key)
        return bool(created)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        # Redis expires keys on its own.
        return 0
