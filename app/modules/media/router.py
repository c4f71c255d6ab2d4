import uuid
from fastapi import APIRouter, UploadFile, File, Form, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from app.api.deps import get_session, get_storage, get_event_bus, get_worker
from app.core.security import get_principal, require_scopes, Principal
from app.modules.media.models import TRANSCRIPTION_STATUSES
from app.modules.media.schemas import MediaCreate, MediaOut, TranscriptionOut, TranscribeRequest
from app.modules.media.service import MediaService

router = APIRouter()

def svc(
    session: AsyncSession = Depends(get_session),
    storage=Depends(get_storage),
    event_bus=Depends(get_event_bus),
    worker=Depends(get_worker),
) -> MediaService:
    return MediaService(session, storage, event_bus=event_bus, worker=worker)

@router.post("", response_model=MediaOut, status_code=201, dependencies=[Depends(require_scopes("media:write"))])
async def create_media(payload: MediaCreate, principal: Principal = Depends(get_principal), service: MediaService = Depends(svc)):
    return await service.create_media(principal.user_id, payload)

@router.post("/upload", response_model=MediaOut, status_code=201, dependencies=[Depends(require_scopes("media:write"))])
async def upload_media(
    file: UploadFile = File(...),
    description: str | None = Form(default=None),
    principal: Principal = Depends(get_principal),
    service: MediaService = Depends(svc),
):
    if file.size is not None and file.size > 100 * 1024 * 1024:
        raise HTTPException(status_code=413, detail="File too large (>100MB); use the chunked upload endpoints")
    return await service.upload_file(principal.user_id, file, description=description)

@router.get("", response_model=list[MediaOut], dependencies=[Depends(require_scopes("media:read"))])
async def list_media(
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_principal),
    service: MediaService = Depends(svc),
):
    if status is not None and status not in TRANSCRIPTION_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(TRANSCRIPTION_STATUSES)}")
    return await service.list_media(principal.user_id, status=status, limit=limit, offset=offset)

@router.get("/{media_id}", response_model=MediaOut, dependencies=[Depends(require_scopes("media:read"))])
async def get_media(media_id: uuid.UUID, principal: Principal = Depends(get_principal), service: MediaService = Depends(svc)):
    return await service.get_media(principal.user_id, media_id)

@router.get("/{media_id}/transcription", response_model=TranscriptionOut, dependencies=[Depends(require_scopes("media:read"))])
async def get_transcription(media_id: uuid.UUID, principal: Principal = Depends(get_principal), service: MediaService = Depends(svc)):
    return await service.get_transcription(principal.user_id, media_id)

@router.post("/{media_id}/transcribe", response_model=MediaOut, status_code=202, dependencies=[Depends(require_scopes("media:write"))])
async def transcribe_media(
    media_id: uuid.UUID,
    payload: TranscribeRequest | None = None,
    principal: Principal = Depends(get_principal),
    service: MediaService = Depends(svc),
):
    force = payload.force if payload else False
    return await service.retranscribe(principal.user_id, media_id, force=force)
