"""
pytest 配置文件
"""
import threading
import time
from datetime import datetime
from typing import Dict, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend import models
from backend.core.storage import KeyStore, UsageStore
from backend.core.usage_fetcher import mask_key
from backend.models.schemas import UsageRecord


class FakeFetcher:
    """
    替代远程查询的假 fetcher，记录调用次数。

    outcomes: api_key -> UsageRecord / Exception / 秒数（延迟后返回默认记录）
    """

    def __init__(self, outcomes: Dict[str, object] = None, delay: float = 0.0,
                 allowance: float = 1000.0, used: float = 250.0):
        self.outcomes = outcomes or {}
        self.delay = delay
        self.allowance = allowance
        self.used = used
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, key_id: str, api_key: str) -> UsageRecord:
        with self._lock:
            self.calls.append(key_id)
        outcome = self.outcomes.get(api_key)
        delay = outcome if isinstance(outcome, (int, float)) else self.delay
        if delay:
            time.sleep(delay)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, UsageRecord):
            return outcome.model_copy(update={"id": key_id})
        return UsageRecord(
            id=key_id,
            key=mask_key(api_key),
            start_date="2026-10-01",
            end_date="2026-10-31",
            total_allowance=self.allowance,
            org_total_tokens_used=self.used,
            remaining=self.allowance - self.used,
            used_ratio=self.used / self.allowance,
            last_updated=datetime.utcnow(),
        )

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)


@pytest.fixture
def test_engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=engine)
    yield engine
    models.Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def key_store(session_factory):
    return KeyStore(session_factory)


@pytest.fixture
def usage_store(session_factory):
    return UsageStore(session_factory)


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def make_fetcher():
    return FakeFetcher
