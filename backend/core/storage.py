# backend/core/storage.py
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..models.api_key import APIKey
from ..models.usage import UsageCache
from ..models.schemas import UsageRecord
from .errors import StorageError

logger = logging.getLogger(__name__)


@contextmanager
def session_scope(session_factory):
    """一次事务：成功提交，数据库异常回滚并转换为 StorageError"""
    db = session_factory()
    try:
        yield db
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(f"storage unavailable: {e}") from e
    finally:
        db.close()


class KeyStore:
    """API Key 持久化"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def list_all(self) -> List[APIKey]:
        with session_scope(self.session_factory) as db:
            keys = db.query(APIKey).order_by(APIKey.created_at, APIKey.id).all()
            db.expunge_all()
            return keys

    def get(self, key_id: str) -> Optional[APIKey]:
        with session_scope(self.session_factory) as db:
            key = db.query(APIKey).filter(APIKey.id == key_id).first()
            if key is not None:
                db.expunge(key)
            return key

    def save(self, key: APIKey) -> APIKey:
        with session_scope(self.session_factory) as db:
            key = db.merge(key)
            db.flush()
            db.expunge(key)
            return key

    def delete(self, key_id: str) -> bool:
        """删除Key及其用量缓存，返回Key是否存在"""
        with session_scope(self.session_factory) as db:
            deleted = db.query(APIKey).filter(APIKey.id == key_id).delete(synchronize_session=False)
            db.query(UsageCache).filter(UsageCache.key_id == key_id).delete(synchronize_session=False)
            return deleted > 0

    def batch_delete(self, key_ids: List[str]) -> Tuple[int, int]:
        """批量删除，返回 (成功数, 失败数)；不存在的ID计为失败"""
        if not key_ids:
            return 0, 0
        try:
            with session_scope(self.session_factory) as db:
                success = 0
                for key_id in key_ids:
                    deleted = db.query(APIKey).filter(APIKey.id == key_id).delete(synchronize_session=False)
                    db.query(UsageCache).filter(UsageCache.key_id == key_id).delete(synchronize_session=False)
                    success += deleted
        except StorageError as e:
            logger.error(f"Batch delete failed: {e}")
            return 0, len(key_ids)
        return success, len(key_ids) - success


class UsageStore:
    """用量缓存，过期时间只是兜底，新鲜度由调用方根据 last_updated 判断"""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def get(self, key_id: str) -> Optional[UsageRecord]:
        with session_scope(self.session_factory) as db:
            row = db.query(UsageCache).filter(UsageCache.key_id == key_id).first()
            if row is None or row.expires_at <= datetime.utcnow():
                return None
            return _to_record(row)

    def set(self, record: UsageRecord, ttl: float):
        self.batch_set([record], ttl)

    def batch_set(self, records: List[UsageRecord], ttl: float):
        """一次事务写入多条，按 Key ID 覆盖（后写者胜）"""
        if not records:
            return
        expires_at = datetime.utcnow() + timedelta(seconds=ttl)
        with session_scope(self.session_factory) as db:
            for record in records:
                db.merge(UsageCache(
                    key_id=record.id,
                    start_date=record.start_date,
                    end_date=record.end_date,
                    total_allowance=record.total_allowance,
                    org_total_tokens_used=record.org_total_tokens_used,
                    remaining=record.remaining,
                    used_ratio=record.used_ratio,
                    last_updated=record.last_updated or datetime.utcnow(),
                    expires_at=expires_at,
                ))

    def delete(self, key_id: str):
        with session_scope(self.session_factory) as db:
            db.query(UsageCache).filter(UsageCache.key_id == key_id).delete(synchronize_session=False)


def _to_record(row: UsageCache) -> UsageRecord:
    return UsageRecord(
        id=row.key_id,
        start_date=row.start_date,
        end_date=row.end_date,
        total_allowance=row.total_allowance,
        org_total_tokens_used=row.org_total_tokens_used,
        remaining=row.remaining,
        used_ratio=row.used_ratio,
        last_updated=row.last_updated,
    )
