# backend/models/schemas.py
from pydantic import BaseModel, Field, validator
from typing import List, Optional
from datetime import datetime


# ---------- 用量记录 ----------
class UsageRecord(BaseModel):
    id: str
    key: Optional[str] = None  # 脱敏后的Key，只用于展示
    start_date: str = "N/A"
    end_date: str = "N/A"
    total_allowance: float = 0.0
    org_total_tokens_used: float = 0.0
    remaining: float = 0.0
    used_ratio: float = 0.0
    last_updated: Optional[datetime] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True

    @property
    def is_ok(self) -> bool:
        return not self.error

    @classmethod
    def from_error(cls, key_id: str, error) -> "UsageRecord":
        """只带错误信息的占位记录"""
        return cls(id=key_id, error=str(error))


# ---------- 汇总报告 ----------
class Totals(BaseModel):
    total_allowance: float = 0.0
    total_org_total_tokens_used: float = 0.0


class AggregatedReport(BaseModel):
    update_time: str
    total_count: int = 0
    totals: Totals = Field(default_factory=Totals)
    data: List[UsageRecord] = Field(default_factory=list)


# ---------- Key 管理 ----------
class APIKeyMasked(BaseModel):
    id: str
    name: str
    masked: str
    created_at: datetime


class APIKeyFull(BaseModel):
    id: str
    key: str

    class Config:
        from_attributes = True


class APIKeyCreate(BaseModel):
    key: str
    name: Optional[str] = None

    @validator('key')
    def key_not_empty(cls, v):
        if not v or not v.strip():
            raise ValueError('key cannot be empty')
        return v.strip()


class ImportRequest(BaseModel):
    keys: List[str] = Field(default_factory=list)


class ImportResult(BaseModel):
    success: int = 0
    failed: int = 0
    duplicates: int = 0


class BatchDeleteRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)


class BatchDeleteResult(BaseModel):
    success: int = 0
    failed: int = 0


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
