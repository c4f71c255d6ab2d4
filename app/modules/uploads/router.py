import uuid
from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession
from app.api.deps import get_session, get_storage
from app.core.config import settings
from app.core.security import require_scopes
from app.modules.uploads.schemas import (
    UploadInit, UploadInitOut, UploadStatusOut, ChunkSlotOut, ChunkStored, UploadComplete, UploadCompleteOut,
)
from app.modules.uploads.service import MultipartUploadManager

router = APIRouter()

def svc(session: AsyncSession = Depends(get_session), storage=Depends(get_storage)) -> MultipartUploadManager:
    return MultipartUploadManager(session, storage, max_chunks=settings.MULTIPART_MAX_CHUNKS)

@router.post("", response_model=UploadInitOut, status_code=201, dependencies=[Depends(require_scopes("media:write"))])
async def init_upload(payload: UploadInit, manager: MultipartUploadManager = Depends(svc)):
    upload_id = await manager.init_upload(payload.num_chunks)
    return UploadInitOut(upload_id=upload_id, num_chunks=payload.num_chunks)

@router.get("/{upload_id}", response_model=UploadStatusOut, dependencies=[Depends(require_scopes("media:read"))])
async def get_upload(upload_id: str, manager: MultipartUploadManager = Depends(svc)):
    return await manager.get_upload(upload_id)

@router.post("/{upload_id}/chunks/{chunk_index}/slot", response_model=ChunkSlotOut, dependencies=[Depends(require_scopes("media:write"))])
async def get_chunk_upload_slot(upload_id: str, chunk_index: int, manager: MultipartUploadManager = Depends(svc)):
    slot = await manager.get_chunk_upload_slot(upload_id, chunk_index)
    return ChunkSlotOut(chunk_id=slot.chunk_id, chunk_index=slot.chunk_index, destination=slot.destination)

@router.post("/chunks/{chunk_id}/stored", status_code=204, dependencies=[Depends(require_scopes("media:write"))])
async def record_chunk_stored(chunk_id: uuid.UUID, payload: ChunkStored, manager: MultipartUploadManager = Depends(svc)):
    await manager.record_chunk_stored(chunk_id, payload.storage_id)
    return Response(status_code=204)

@router.post("/{upload_id}/complete", response_model=UploadCompleteOut, dependencies=[Depends(require_scopes("media:write"))])
async def complete_upload(upload_id: str, payload: UploadComplete, manager: MultipartUploadManager = Depends(svc)):
    storage_id = await manager.complete_upload(upload_id, payload.content_type, payload.first_chunk_storage_id)
    return UploadCompleteOut(upload_id=upload_id, storage_id=storage_id)
