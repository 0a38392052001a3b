# backend/models/usage.py
from sqlalchemy import Column, String, Float, DateTime
from datetime import datetime
from . import Base


class UsageCache(Base):
    """最近一次成功拉取的用量，按 Key ID 覆盖写入"""
    __tablename__ = 'usage_cache'

    key_id = Column(String(64), primary_key=True)

    # 计费周期
    start_date = Column(String(20), default="N/A")
    end_date = Column(String(20), default="N/A")

    # 额度信息
    total_allowance = Column(Float, default=0.0)
    org_total_tokens_used = Column(Float, default=0.0)
    remaining = Column(Float, default=0.0)
    used_ratio = Column(Float, default=0.0)

    # 新鲜度由 last_updated 判断，expires_at 只是兜底
    last_updated = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)
