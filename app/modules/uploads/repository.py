import uuid
from typing import Sequence
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.base import utcnow
from app.modules.uploads.models import MultipartUpload, MultipartChunk

class UploadRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, *, upload_id: str, num_chunks: int) -> MultipartUpload:
        obj = MultipartUpload(upload_id=upload_id, num_chunks=num_chunks, stored_chunks=0, is_complete=False)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get_by_upload_id(self, upload_id: str) -> MultipartUpload | None:
        q = select(MultipartUpload).where(
            MultipartUpload.upload_id == upload_id,
            MultipartUpload.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get(self, pk: uuid.UUID) -> MultipartUpload | None:
        q = select(MultipartUpload).where(MultipartUpload.id == pk).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def find_completed_by_storage_id(self, storage_id: str) -> MultipartUpload | None:
        q = select(MultipartUpload).where(
            MultipartUpload.storage_id == storage_id,
            MultipartUpload.is_complete.is_(True),
            MultipartUpload.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalars().first()

    async def increment_stored(self, pk: uuid.UUID) -> None:
        # atomic in the database, no read-modify-write
        q = (
            update(MultipartUpload)
            .where(MultipartUpload.id == pk)
            .values(stored_chunks=MultipartUpload.stored_chunks + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(q)

    async def mark_complete(self, pk: uuid.UUID, *, storage_id: str, content_type: str) -> bool:
        q = (
            update(MultipartUpload)
            .where(
                MultipartUpload.id == pk,
                MultipartUpload.is_complete.is_(False),
                MultipartUpload.stored_chunks == MultipartUpload.num_chunks,
            )
            .values(is_complete=True, storage_id=storage_id, content_type=content_type, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1

class ChunkRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, upload_pk: uuid.UUID, chunk_index: int) -> MultipartChunk:
        obj = MultipartChunk(upload_pk=upload_pk, chunk_index=chunk_index)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, chunk_id: uuid.UUID) -> MultipartChunk | None:
        q = select(MultipartChunk).where(
            MultipartChunk.id == chunk_id,
            MultipartChunk.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def get_by_index(self, upload_pk: uuid.UUID, chunk_index: int) -> MultipartChunk | None:
        q = select(MultipartChunk).where(
            MultipartChunk.upload_pk == upload_pk,
            MultipartChunk.chunk_index == chunk_index,
        ).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list_for_upload(self, upload_pk: uuid.UUID) -> Sequence[MultipartChunk]:
        # assembly order is index order, never arrival order
        q = (
            select(MultipartChunk)
            .where(MultipartChunk.upload_pk == upload_pk)
            .order_by(MultipartChunk.chunk_index.asc())
            .execution_options(populate_existing=True)
        )
        res = await self.session.execute(q)
        return res.scalars().all()

    async def set_storage_if_empty(self, chunk_id: uuid.UUID, storage_id: str) -> bool:
        """First writer wins; returns False if the chunk already had a storage id."""
        q = (
            update(MultipartChunk)
            .where(MultipartChunk.id == chunk_id, MultipartChunk.storage_id.is_(None))
            .values(storage_id=storage_id, uploaded_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1
