import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.errors import InvalidArgument, OutOfRange, NotFound, InvalidState, Conflict, Incomplete
from app.platform.ports.object_storage import ObjectStoragePort
from app.modules.uploads.repository import UploadRepository, ChunkRepository
from app.modules.uploads.models import MultipartUpload

logger = logging.getLogger(__name__)

@dataclass
class ChunkSlot:
    chunk_id: uuid.UUID
    chunk_index: int
    destination: dict

class MultipartUploadManager:
    """
    Bookkeeping for chunked uploads.

    Chunk indices are caller-supplied and trusted for ordering; a chunk's
    storage id is written once and the stored-chunk counter moves in the same
    transaction, so a repeated ``record_chunk_stored`` never counts twice.
    Completion concatenates the chunk objects in index order into one object.
    """
    def __init__(self, session: AsyncSession, storage: ObjectStoragePort, *, max_chunks: int = 10000):
        self.session = session
        self.storage = storage
        self.max_chunks = max_chunks
        self.uploads = UploadRepository(session)
        self.chunks = ChunkRepository(session)

    async def init_upload(self, num_chunks: int) -> str:
        if isinstance(num_chunks, bool) or not isinstance(num_chunks, int) or num_chunks <= 0:
            raise InvalidArgument(f"num_chunks must be a positive integer, got {num_chunks!r}")
        if num_chunks > self.max_chunks:
            raise InvalidArgument(f"num_chunks must be at most {self.max_chunks}")
        upload_id = secrets.token_urlsafe(32)
        await self.uploads.create(upload_id=upload_id, num_chunks=num_chunks)
        await self.session.commit()
        logger.info("Multipart upload initialized with %d chunks", num_chunks)
        return upload_id

    async def get_upload(self, upload_id: str) -> MultipartUpload:
        upload = await self.uploads.get_by_upload_id(upload_id)
        if not upload:
            raise NotFound("Upload not found")
        return upload

    async def get_chunk_upload_slot(self, upload_id: str, chunk_index: int) -> ChunkSlot:
        upload = await self.get_upload(upload_id)
        if upload.is_complete:
            raise InvalidState("Upload is already complete")
        if not 0 <= chunk_index < upload.num_chunks:
            raise OutOfRange(f"chunk_index {chunk_index} outside [0, {upload.num_chunks})")

        chunk = await self.chunks.get_by_index(upload.id, chunk_index)
        if chunk is None:
            try:
                chunk = await self.chunks.create(upload.id, chunk_index)
                await self.session.commit()
            except IntegrityError:
                # a concurrent request created the row first
                await self.session.rollback()
                chunk = await self.chunks.get_by_index(upload.id, chunk_index)
        if chunk.storage_id is not None:
            raise Conflict(f"Chunk {chunk_index} is already stored")

        destination = self.storage.generate_upload_url()
        return ChunkSlot(chunk_id=chunk.id, chunk_index=chunk.chunk_index, destination=destination)

    async def record_chunk_stored(self, chunk_id: uuid.UUID, storage_id: str) -> None:
        chunk = await self.chunks.get(chunk_id)
        if not chunk:
            raise NotFound("Chunk not found")
        if chunk.storage_id is not None:
            if chunk.storage_id == storage_id:
                return
            raise Conflict(f"Chunk {chunk.chunk_index} is already stored with a different storage id")
        if not self.storage.exists(storage_id):
            raise InvalidArgument(f"Storage id {storage_id} does not exist")

        if await self.chunks.set_storage_if_empty(chunk.id, storage_id):
            await self.uploads.increment_stored(chunk.upload_pk)
            await self.session.commit()
            logger.debug("Chunk %d of upload %s stored", chunk.chunk_index, chunk.upload_pk)
            return

        # lost the race to another recorder for the same chunk
        await self.session.rollback()
        chunk = await self.chunks.get(chunk_id)
        if chunk.storage_id != storage_id:
            raise Conflict(f"Chunk {chunk.chunk_index} is already stored with a different storage id")

    async def complete_upload(self, upload_id: str, content_type: str, first_chunk_storage_id: str | None = None) -> str:
        upload = await self.get_upload(upload_id)
        if upload.is_complete:
            raise InvalidState("Upload is already complete")
        if upload.stored_chunks != upload.num_chunks:
            raise Incomplete(f"{upload.stored_chunks} of {upload.num_chunks} chunks stored")

        chunks = await self.chunks.list_for_upload(upload.id)
        storage_ids = [c.storage_id for c in chunks]
        if [c.chunk_index for c in chunks] != list(range(upload.num_chunks)) or any(s is None for s in storage_ids):
            raise Incomplete(f"Chunks missing for upload {upload_id}")
        if first_chunk_storage_id and first_chunk_storage_id != storage_ids[0]:
            raise Conflict("first_chunk_storage_id does not match chunk 0")

        final_storage_id = await asyncio.to_thread(self.storage.compose, storage_ids, content_type)
        if not await self.uploads.mark_complete(upload.id, storage_id=final_storage_id, content_type=content_type):
            await self.session.rollback()
            self.storage.delete(final_storage_id)
            raise InvalidState("Upload was completed concurrently")
        await self.session.commit()
        logger.info("Multipart upload assembled from %d chunks into %s", len(storage_ids), final_storage_id)
        return final_storage_id
