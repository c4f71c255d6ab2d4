import asyncio
import logging
import uuid
from typing import Sequence
from fastapi import UploadFile
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.errors import InvalidArgument, NotFound
from app.platform.ports.object_storage import ObjectStoragePort
from app.platform.ports.event_bus import EventBusPort
from app.modules.media.repository import MediaRepository
from app.modules.media.models import MediaRecord
from app.modules.media.schemas import MediaCreate, TranscriptionOut
from app.modules.transcription.service import TranscriptionService

logger = logging.getLogger(__name__)

def is_transcribable(mime_type: str) -> bool:
    return mime_type.startswith("audio/") or mime_type.startswith("video/")

class MediaService:
    def __init__(self, session: AsyncSession, storage: ObjectStoragePort, *, event_bus: EventBusPort | None = None, worker=None):
        self.repo = MediaRepository(session)
        self.session = session
        self.storage = storage
        self.transcriptions = TranscriptionService(session, event_bus=event_bus, worker=worker)

    async def create_media(self, owner_id: uuid.UUID, payload: MediaCreate) -> MediaRecord:
        """Register an already-uploaded file and queue its transcription."""
        if not is_transcribable(payload.mime_type):
            raise InvalidArgument("Only audio and video files are supported")
        if not self.storage.exists(payload.storage_id):
            raise InvalidArgument(f"Storage id {payload.storage_id} does not exist")

        obj = await self.repo.create(
            owner_id,
            name=payload.name,
            storage_id=payload.storage_id,
            size_bytes=payload.size_bytes,
            mime_type=payload.mime_type,
            description=payload.description,
            duration_ms=payload.duration_ms,
        )
        await self.session.commit()
        logger.info(f"Media {obj.id} created for {payload.name} ({payload.size_bytes} bytes)")

        await self.transcriptions.trigger_transcription(obj.id, obj.storage_id, user_id=owner_id)
        return obj

    async def upload_file(self, owner_id: uuid.UUID, file: UploadFile, *, description: str | None = None) -> MediaRecord:
        # Read file fully; large files go through the chunked upload protocol instead
        data = await file.read()
        mime_type = file.content_type or "application/octet-stream"
        if not is_transcribable(mime_type):
            raise InvalidArgument("Only audio and video files are supported")
        storage_id = await asyncio.to_thread(self.storage.put_bytes, data, mime_type)
        payload = MediaCreate(
            name=file.filename or storage_id,
            storage_id=storage_id,
            size_bytes=len(data),
            mime_type=mime_type,
            description=description,
        )
        return await self.create_media(owner_id, payload)

    async def get_media(self, owner_id: uuid.UUID, media_id: uuid.UUID) -> MediaRecord:
        obj = await self.repo.get(media_id, owner_id=owner_id)
        if not obj:
            raise NotFound("Media not found")
        return obj

    async def list_media(self, owner_id: uuid.UUID, *, status: str | None = None, limit: int = 50, offset: int = 0) -> Sequence[MediaRecord]:
        return await self.repo.list_for_owner(owner_id, status=status, limit=limit, offset=offset)

    async def get_transcription(self, owner_id: uuid.UUID, media_id: uuid.UUID) -> TranscriptionOut:
        obj = await self.get_media(owner_id, media_id)
        return TranscriptionOut(
            media_id=obj.id,
            status=obj.transcription_status,
            text=obj.transcription_text,
            error=obj.error_message,
            transcribed_at=obj.transcribed_at,
        )

    async def retranscribe(self, owner_id: uuid.UUID, media_id: uuid.UUID, *, force: bool = False) -> MediaRecord:
        obj = await self.get_media(owner_id, media_id)
        await self.transcriptions.trigger_transcription(obj.id, obj.storage_id, user_id=owner_id, retry=True, force=force)
        return obj
