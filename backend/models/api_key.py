# backend/models/api_key.py
from sqlalchemy import Column, String, DateTime, Text
from datetime import datetime
from . import Base


class APIKey(Base):
    __tablename__ = 'api_keys'

    id = Column(String(64), primary_key=True)  # 形如 key-1a2b3c4d-1700000000
    key = Column(Text, nullable=False)  # 实际的API Key
    name = Column(String(200), default="")  # 显示名称
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<APIKey id={self.id!r} name={self.name!r}>"
