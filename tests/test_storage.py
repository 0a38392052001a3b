"""
存储层测试（内存 SQLite）
"""
from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy.exc import OperationalError

from backend.core.errors import StorageError
from backend.core.storage import KeyStore, UsageStore
from backend.models.api_key import APIKey
from backend.models.schemas import UsageRecord


def add_key(store, key_id, secret, minutes_ago=0):
    return store.save(APIKey(
        id=key_id,
        key=secret,
        name=f"Key {key_id}",
        created_at=datetime.utcnow() - timedelta(minutes=minutes_ago),
    ))


def usage(key_id, allowance=100.0, used=40.0, last_updated=None):
    return UsageRecord(
        id=key_id,
        start_date="2026-10-01",
        end_date="2026-10-31",
        total_allowance=allowance,
        org_total_tokens_used=used,
        remaining=allowance - used,
        used_ratio=used / allowance,
        last_updated=last_updated or datetime.utcnow(),
    )


def broken_factory():
    session = Mock()
    session.query.side_effect = OperationalError("SELECT 1", {}, Exception("database is down"))
    session.merge.side_effect = OperationalError("INSERT", {}, Exception("database is down"))
    return Mock(return_value=session)


class TestKeyStore:

    def test_save_and_get(self, key_store):
        add_key(key_store, "k1", "secret-one")
        key = key_store.get("k1")
        assert key.key == "secret-one"
        assert key.name == "Key k1"
        assert key_store.get("missing") is None

    def test_list_all_ordered_by_creation(self, key_store):
        add_key(key_store, "k-new", "s1", minutes_ago=1)
        add_key(key_store, "k-old", "s2", minutes_ago=10)
        add_key(key_store, "k-mid", "s3", minutes_ago=5)
        assert [k.id for k in key_store.list_all()] == ["k-old", "k-mid", "k-new"]

    def test_delete_removes_key_and_usage(self, key_store, usage_store):
        add_key(key_store, "k1", "secret-one")
        usage_store.set(usage("k1"), ttl=300)

        assert key_store.delete("k1") is True
        assert key_store.get("k1") is None
        assert usage_store.get("k1") is None
        assert key_store.delete("k1") is False

    def test_batch_delete_counts_missing_as_failed(self, key_store):
        add_key(key_store, "k1", "s1")
        add_key(key_store, "k2", "s2")
        assert key_store.batch_delete(["k1", "k2", "nope"]) == (2, 1)
        assert key_store.list_all() == []

    def test_batch_delete_storage_down_counts_all_failed(self):
        store = KeyStore(broken_factory())
        assert store.batch_delete(["k1", "k2"]) == (0, 2)

    def test_list_all_storage_down_raises(self):
        with pytest.raises(StorageError):
            KeyStore(broken_factory()).list_all()


class TestUsageStore:

    def test_set_and_get(self, usage_store):
        usage_store.set(usage("k1", allowance=200, used=50), ttl=300)
        record = usage_store.get("k1")
        assert record.id == "k1"
        assert record.total_allowance == 200
        assert record.remaining == 150
        assert record.error is None

    def test_expired_rows_are_absent(self, usage_store):
        usage_store.set(usage("k1"), ttl=-1)
        assert usage_store.get("k1") is None

    def test_batch_set_last_write_wins(self, usage_store):
        usage_store.batch_set([usage("k1", used=10), usage("k2", used=20)], ttl=300)
        usage_store.batch_set([usage("k1", used=90)], ttl=300)
        assert usage_store.get("k1").org_total_tokens_used == 90
        assert usage_store.get("k2").org_total_tokens_used == 20

    def test_last_updated_is_kept(self, usage_store):
        stamp = datetime.utcnow() - timedelta(minutes=3)
        usage_store.set(usage("k1", last_updated=stamp), ttl=300)
        assert usage_store.get("k1").last_updated == stamp

    def test_delete(self, usage_store):
        usage_store.set(usage("k1"), ttl=300)
        usage_store.delete("k1")
        assert usage_store.get("k1") is None

    def test_write_storage_down_raises(self):
        with pytest.raises(StorageError):
            UsageStore(broken_factory()).batch_set([usage("k1")], ttl=300)
