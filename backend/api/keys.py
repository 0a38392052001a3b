# backend/api/keys.py
from fastapi import APIRouter, Depends, HTTPException, Request
from typing import List

from ..core.errors import DuplicateKeyError, KeyNotFoundError, StorageError
from ..core.key_service import APIKeyService
from ..core.usage_fetcher import mask_key
from ..models.schemas import (
    APIKeyCreate, APIKeyFull, APIKeyMasked, BatchDeleteRequest, BatchDeleteResult,
    ImportRequest, ImportResult, SuccessResponse,
)

router = APIRouter(prefix="/api/keys", tags=["keys"])


# 依赖
def get_service(request: Request) -> APIKeyService:
    return request.app.state.key_service


# 列出所有Key（脱敏）
@router.get("", response_model=List[APIKeyMasked])
def list_keys(service: APIKeyService = Depends(get_service)):
    try:
        return service.list_keys_masked()
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))


# 添加单个Key
@router.post("", response_model=APIKeyMasked)
def add_key(body: APIKeyCreate, service: APIKeyService = Depends(get_service)):
    try:
        key = service.add_key(body.key, body.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicateKeyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return APIKeyMasked(id=key.id, name=key.name, masked=mask_key(key.key), created_at=key.created_at)


# 批量导入
@router.post("/import", response_model=ImportResult)
def import_keys(body: ImportRequest, service: APIKeyService = Depends(get_service)):
    if not body.keys:
        raise HTTPException(status_code=400, detail="No keys provided")
    try:
        return service.import_keys(body.keys)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))


# 批量删除
@router.post("/batch-delete", response_model=BatchDeleteResult)
def batch_delete_keys(body: BatchDeleteRequest, service: APIKeyService = Depends(get_service)):
    if not body.ids:
        raise HTTPException(status_code=400, detail="No IDs provided")
    return service.batch_delete_keys(body.ids)


# 获取完整Key
@router.get("/{key_id}/full", response_model=APIKeyFull)
def get_full_key(key_id: str, service: APIKeyService = Depends(get_service)):
    try:
        key = service.get_full_key(key_id)
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if not key:
        raise HTTPException(status_code=404, detail="Key not found")
    return key


# 删除Key
@router.delete("/{key_id}", response_model=SuccessResponse)
def delete_key(key_id: str, service: APIKeyService = Depends(get_service)):
    try:
        service.delete_key(key_id)
    except KeyNotFoundError:
        raise HTTPException(status_code=404, detail="Key not found")
    except StorageError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return SuccessResponse(success=True)
