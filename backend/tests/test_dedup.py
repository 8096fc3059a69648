from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import fakeredis
import pytest
import redis
import sqlalchemy.exc
from payhook.core.config import DedupFailurePolicy
from payhook.db import models
from payhook.db.session import SessionLocal
from payhook.errors import DedupStoreUnavailable
from payhook.services import dedup as dedup_module
from payhook.services.dedup import (
    DatabaseDedupStore,
    InMemoryDedupStore,
    RedisDedupStore,
    dedupe,
    release,
)


class BrokenStore:
    def add_if_absent(self, key: str) -> bool:
        raise DedupStoreUnavailable("store is down")


def test_scenario_c_first_delivery_then_redelivery():
    store = InMemoryDedupStore()
    assert dedupe("evt-1", store) is True
    assert dedupe("evt-1", store) is False
    assert dedupe("evt-2", store) is True


def test_concurrent_same_id_only_one_winner():
    store = InMemoryDedupStore()
    with ThreadPoolExecutor(max_workers=32) as pool:
        results = list(pool.map(lambda _: dedupe("evt-1", store), range(64)))
    assert results.count(True) == 1
    assert results.count(False) == 63


def test_empty_id_raises():
    with pytest.raises(ValueError):
        dedupe("", InMemoryDedupStore())


def test_fail_closed_propagates():
    with pytest.raises(DedupStoreUnavailable):
        dedupe("evt-1", BrokenStore(), DedupFailurePolicy.FAIL_CLOSED)


def test_fail_open_treats_event_as_new():
    assert dedupe("evt-1", BrokenStore(), DedupFailurePolicy.FAIL_OPEN) is True


def test_memory_store_ttl(monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(dedup_module.time, "monotonic", lambda: clock[0])
    store = InMemoryDedupStore(ttl_seconds=60)
    assert store.add_if_absent("evt-1") is True
    clock[0] += 30
    assert store.add_if_absent("evt-1") is False
    clock[0] += 61
    assert store.add_if_absent("evt-1") is True


def test_memory_store_prunes_expired_keys(monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(dedup_module.time, "monotonic", lambda: clock[0])
    store = InMemoryDedupStore(ttl_seconds=60)
    for i in range(100):
        store.add_if_absent(f"evt-{i}")
    clock[0] += 61
    store.add_if_absent("evt-new")
    assert list(store._seen) == ["evt-new"]


def test_memory_store_discard():
    store = InMemoryDedupStore()
    assert dedupe("evt-1", store) is True
    assert release("evt-1", store) is True
    assert dedupe("evt-1", store) is True
    store.discard("never-seen")


def test_release_reports_unreachable_store():
    client = MagicMock()
    client.delete.side_effect = redis.ConnectionError("connection refused")
    assert release("evt-1", RedisDedupStore(client)) is False


# ---------- redis ----------
def test_redis_store_set_nx():
    client = fakeredis.FakeRedis(decode_responses=True)
    store = RedisDedupStore(client, ttl_seconds=120)
    assert dedupe("evt-1", store) is True
    assert dedupe("evt-1", store) is False
    assert client.get("payhook:seen:evt-1") == "1"
    assert 0 < client.ttl("payhook:seen:evt-1") <= 120


def test_redis_store_uses_atomic_set():
    client = MagicMock()
    client.set.return_value = None
    store = RedisDedupStore(client, ttl_seconds=86400)
    assert store.add_if_absent("evt-1") is False
    client.set.assert_called_once_with("payhook:seen:evt-1", "1", nx=True, ex=86400)
    client.get.assert_not_called()


def test_redis_store_discard():
    client = fakeredis.FakeRedis(decode_responses=True)
    store = RedisDedupStore(client)
    assert dedupe("evt-1", store) is True
    store.discard("evt-1")
    assert client.exists("payhook:seen:evt-1") == 0
    assert dedupe("evt-1", store) is True


def test_redis_store_concurrent_same_id_only_one_winner():
    store = RedisDedupStore(fakeredis.FakeRedis(decode_responses=True))
    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(lambda _: dedupe("evt-1", store), range(32)))
    assert results.count(True) == 1
    assert results.count(False) == 31


def test_redis_errors_become_store_unavailable():
    client = MagicMock()
    client.set.side_effect = redis.ConnectionError("connection refused")
    store = RedisDedupStore(client)
    with pytest.raises(DedupStoreUnavailable):
        store.add_if_absent("evt-1")
    assert dedupe("evt-1", store, DedupFailurePolicy.FAIL_OPEN) is True


# ---------- database ----------
def test_database_store_unique_key():
    store = DatabaseDedupStore(SessionLocal)
    assert dedupe("evt-1", store) is True
    assert dedupe("evt-1", store) is False

    db = SessionLocal()
    try:
        assert db.query(models.ProcessedEvent).filter_by(event_key="evt-1").count() == 1
    finally:
        db.close()


def test_database_store_discard():
    store = DatabaseDedupStore(SessionLocal)
    assert dedupe("evt-1", store) is True
    store.discard("evt-1")
    assert dedupe("evt-1", store) is True
    assert dedupe("evt-1", store) is False


def test_database_store_concurrent_same_id_only_one_winner():
    store = DatabaseDedupStore(SessionLocal)
    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: dedupe("evt-1", store), range(16)))
    assert results.count(True) == 1
    assert results.count(False) == 15


def test_database_store_unreachable():
    def broken_session():
        session = MagicMock()
        session.commit.side_effect = sqlalchemy.exc.OperationalError(
            "INSERT", {}, Exception("server closed the connection")
        )
        return session

    store = DatabaseDedupStore(broken_session)
    with pytest.raises(DedupStoreUnavailable):
        store.add_if_absent("evt-1")
