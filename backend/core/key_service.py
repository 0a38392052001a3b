# backend/core/key_service.py
import logging
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..models.api_key import APIKey
from ..models.schemas import (
    AggregatedReport, APIKeyMasked, BatchDeleteResult, ImportResult, Totals, UsageRecord,
)
from .batch_coordinator import BatchCoordinator
from .errors import DuplicateKeyError, KeyNotFoundError, StorageError
from .storage import KeyStore, UsageStore
from .usage_fetcher import mask_key

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class LocalUsageCache:
    """进程内用量缓存（快速路径），带过期时间，线程安全"""

    def __init__(self, ttl: float = 300.0):
        self.ttl = ttl
        self._entries: Dict[str, Tuple[float, UsageRecord]] = {}
        self._lock = threading.Lock()

    def get(self, key_id: str) -> Optional[UsageRecord]:
        with self._lock:
            entry = self._entries.get(key_id)
            if entry is None:
                return None
            expires_at, record = entry
            if expires_at <= time.monotonic():
                del self._entries[key_id]
                return None
            return record

    def set(self, record: UsageRecord):
        with self._lock:
            self._entries[record.id] = (time.monotonic() + self.ttl, record)

    def delete(self, key_id: str):
        with self._lock:
            self._entries.pop(key_id, None)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)


def new_key_id() -> str:
    return f"key-{uuid.uuid4().hex[:8]}-{int(time.time())}"


class APIKeyService:
    """Key 管理 + 带缓存的用量汇总"""

    def __init__(self, key_store: KeyStore, usage_store: UsageStore, coordinator: BatchCoordinator,
                 cache_ttl: float = 300.0, freshness: float = 300.0,
                 local_cache: Optional[LocalUsageCache] = None):
        self.key_store = key_store
        self.usage_store = usage_store
        self.coordinator = coordinator
        self.cache_ttl = cache_ttl
        self.freshness = timedelta(seconds=freshness)
        self.local_cache = local_cache or LocalUsageCache(ttl=freshness)

    # ---------- Key 管理 ----------

    def import_keys(self, keys: List[str]) -> ImportResult:
        """批量导入；空白跳过，与已有或同批重复的计入 duplicates"""
        result = ImportResult()
        existing = {k.key for k in self.key_store.list_all()}

        for raw in keys:
            key_str = (raw or "").strip()
            if not key_str:
                continue
            if key_str in existing:
                result.duplicates += 1
                continue
            try:
                self.key_store.save(self._new_key(key_str))
            except StorageError as e:
                logger.error(f"Failed to save key {mask_key(key_str)}: {e}")
                result.failed += 1
                continue
            result.success += 1
            existing.add(key_str)

        logger.info(f"Imported keys: success={result.success} failed={result.failed} "
                    f"duplicates={result.duplicates}")
        return result

    def add_key(self, key: str, name: Optional[str] = None) -> APIKey:
        key_str = (key or "").strip()
        if not key_str:
            raise ValueError("key cannot be empty")
        if any(k.key == key_str for k in self.key_store.list_all()):
            raise DuplicateKeyError(f"key {mask_key(key_str)} already exists")
        return self.key_store.save(self._new_key(key_str, name))

    def list_keys_masked(self) -> List[APIKeyMasked]:
        return [
            APIKeyMasked(id=k.id, name=k.name or "", masked=mask_key(k.key), created_at=k.created_at)
            for k in self.key_store.list_all()
        ]

    def get_full_key(self, key_id: str) -> Optional[APIKey]:
        return self.key_store.get(key_id)

    def delete_key(self, key_id: str):
        # 删除前后都清本地缓存，并发汇总写回的旧数据也会被清掉
        self.local_cache.delete(key_id)
        try:
            if not self.key_store.delete(key_id):
                raise KeyNotFoundError(f"key {key_id} not found")
        finally:
            self.local_cache.delete(key_id)

    def batch_delete_keys(self, key_ids: List[str]) -> BatchDeleteResult:
        for key_id in key_ids:
            self.local_cache.delete(key_id)
        success, failed = self.key_store.batch_delete(key_ids)
        for key_id in key_ids:
            self.local_cache.delete(key_id)
        return BatchDeleteResult(success=success, failed=failed)

    # ---------- 用量汇总 ----------

    def get_aggregated_report(self) -> AggregatedReport:
        """
        汇总所有Key的用量：新鲜的缓存直接使用，其余交给批量调度查询，
        成功的结果写回缓存。Key列表读取失败时抛出 StorageError。
        """
        keys = self.key_store.list_all()
        now = datetime.utcnow()
        if not keys:
            return AggregatedReport(update_time=now.strftime(TIME_FORMAT))

        records: Dict[str, UsageRecord] = {}
        stale: List[APIKey] = []
        for key in keys:
            cached = self._cached_usage(key.id, now)
            if cached is not None:
                records[key.id] = cached.model_copy(update={"key": mask_key(key.key)})
            else:
                stale.append(key)

        if stale:
            fresh = self.coordinator.process(stale)
            for record in fresh:
                records[record.id] = record
            self._write_back([r for r in fresh if r.is_ok])

        data = [records[key.id] for key in keys]
        totals = Totals()
        for record in data:
            if record.is_ok:
                totals.total_allowance += record.total_allowance
                totals.total_org_total_tokens_used += record.org_total_tokens_used

        available = sum(1 for r in data if r.is_ok and r.remaining > 0)
        logger.info(f"Aggregated {len(keys)} keys: {len(keys) - len(stale)} cached, "
                    f"{len(stale)} fetched, {available} with remaining balance")

        return AggregatedReport(
            update_time=datetime.utcnow().strftime(TIME_FORMAT),
            total_count=len(keys),
            totals=totals,
            data=data,
        )

    def _cached_usage(self, key_id: str, now: datetime) -> Optional[UsageRecord]:
        record = self.local_cache.get(key_id)
        if record is not None and self._is_fresh(record, now):
            return record
        try:
            record = self.usage_store.get(key_id)
        except StorageError as e:
            logger.warning(f"Usage cache read failed for {key_id}: {e}")
            return None
        if record is None or not self._is_fresh(record, now):
            return None
        self.local_cache.set(record)
        return record

    def _is_fresh(self, record: UsageRecord, now: datetime) -> bool:
        return record.last_updated is not None and now - record.last_updated < self.freshness

    def _write_back(self, records: List[UsageRecord]):
        if not records:
            return
        for record in records:
            self.local_cache.set(record)
        try:
            self.usage_store.batch_set(records, self.cache_ttl)
        except StorageError as e:
            logger.error(f"Failed to write {len(records)} usage records to cache: {e}")

    def _new_key(self, key_str: str, name: Optional[str] = None) -> APIKey:
        key_id = new_key_id()
        return APIKey(id=key_id, key=key_str, name=name or f"Key {key_id}", created_at=datetime.utcnow())
