# backend/api/data.py
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request

from ..core.errors import StorageError
from ..core.key_service import APIKeyService
from ..models.schemas import AggregatedReport
from .keys import get_service

router = APIRouter(tags=["data"])

VERSION = "1.0.0"


@router.get("/health")
def health():
    return {"status": "healthy", "time": datetime.utcnow().isoformat(), "version": VERSION}


# 汇总用量（先读缓存，过期的Key并发查询）
@router.get("/api/data", response_model=AggregatedReport)
def get_data(service: APIKeyService = Depends(get_service)):
    try:
        return service.get_aggregated_report()
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/api/pool/stats")
def pool_stats(request: Request):
    return request.app.state.worker_pool.stats()
