"""Idempotency stores and duplicate-request handling."""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

from proctrack.extensions import db
from proctrack.idempotency import DatabaseIdempotencyStore, RedisIdempotencyStore, idempotency_key
from proctrack.models import IdempotencyKey


def test_key_format():
    assert idempotency_key("add_quotation", 7, " abc ") == "add_quotation:7:abc"


class TestDatabaseStore:
    def test_first_use_then_duplicate(self, app):
        store = DatabaseIdempotencyStore()
        with app.app_context():
            assert store.consume("quotation:1:k1") is True
            db.session.commit()
            assert store.consume("quotation:1:k1") is False
            assert store.consume("quotation:1:k2") is True

    def test_duplicate_within_same_transaction(self, app):
        store = DatabaseIdempotencyStore()
        with app.app_context():
            assert store.consume("x") is True
            assert store.consume("x") is False

    def test_rollback_releases_key(self, app):
        store = DatabaseIdempotencyStore()
        with app.app_context():
            assert store.consume("y") is True
            db.session.rollback()
            assert store.consume("y") is True

    def test_purge_expired(self, app):
        store = DatabaseIdempotencyStore(ttl_seconds=3600)
        now = datetime(2025, 1, 1, 12, 0, 0)
        with app.app_context():
            db.session.add(IdempotencyKey(key="old", created_at=now - timedelta(hours=2)))
            db.session.add(IdempotencyKey(key="fresh", created_at=now - timedelta(minutes=5)))
            db.session.commit()

            assert store.purge_expired(now) == 1
            assert [row.key for row in IdempotencyKey.query.all()] == ["fresh"]


class TestRedisStore:
    def test_set_nx_ex(self):
        client = MagicMock()
        client.set.return_value = True
        store = RedisIdempotencyStore(client, ttl_seconds=60)

        assert store.consume("transition:3:abc") is True
        client.set.assert_called_once_with("proctrack:idem:transition:3:abc", "1", nx=True, ex=60)

    def test_existing_key_is_duplicate(self):
        client = MagicMock()
        client.set.return_value = None
        assert RedisIdempotencyStore(client).consume("k") is False

    def test_purge_is_noop(self):
        assert RedisIdempotencyStore(MagicMock()).purge_expired() == 0
