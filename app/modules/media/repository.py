import uuid
from typing import Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, or_, and_
from app.core.base import utcnow
from app.modules.media.models import MediaRecord, PENDING, PROCESSING, COMPLETED, ERROR
from app.modules.transcription.models import TranscriptionRun, FINISHED as RUN_FINISHED

class MediaRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, owner_id: uuid.UUID, *, name: str, storage_id: str, size_bytes: int, mime_type: str, description: str | None = None, duration_ms: int | None = None) -> MediaRecord:
        obj = MediaRecord(
            owner_id=owner_id, name=name, storage_id=storage_id, size_bytes=size_bytes,
            mime_type=mime_type, description=description, duration_ms=duration_ms,
            transcription_status=PENDING,
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, media_id: uuid.UUID, owner_id: uuid.UUID | None = None) -> MediaRecord | None:
        q = select(MediaRecord).where(
            MediaRecord.id == media_id,
            MediaRecord.deleted_at.is_(None),
        ).execution_options(populate_existing=True)
        if owner_id is not None:
            q = q.where(MediaRecord.owner_id == owner_id)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def list_for_owner(self, owner_id: uuid.UUID, *, status: str | None = None, limit: int = 50, offset: int = 0) -> Sequence[MediaRecord]:
        conditions = [MediaRecord.owner_id == owner_id, MediaRecord.deleted_at.is_(None)]
        if status: conditions.append(MediaRecord.transcription_status == status)
        q = select(MediaRecord).where(and_(*conditions)).order_by(MediaRecord.created_at.desc()).limit(limit).offset(offset)
        res = await self.session.execute(q)
        return res.scalars().all()

    # ---- Transcription fields: written only by the run holding the lock ----

    async def claim_for_run(self, media_id: uuid.UUID, run_id: uuid.UUID, *, force: bool = False) -> bool:
        """
        Move the record to ``processing`` on behalf of ``run_id``.

        Succeeds from pending or error (completed too when ``force``), when
        the record is already processing for this same run (crash resume), or
        when the run holding it has finished without releasing it (its final
        status write failed).
        A single conditional UPDATE, so two runs can never both win.
        """
        startable = [PENDING, ERROR] + ([COMPLETED] if force else [])
        q = (
            update(MediaRecord)
            .where(
                MediaRecord.id == media_id,
                MediaRecord.deleted_at.is_(None),
                or_(
                    MediaRecord.transcription_status.in_(startable),
                    and_(MediaRecord.transcription_status == PROCESSING, MediaRecord.transcription_run_id == run_id),
                    and_(
                        MediaRecord.transcription_status == PROCESSING,
                        MediaRecord.transcription_run_id.in_(
                            select(TranscriptionRun.id).where(TranscriptionRun.status.in_(RUN_FINISHED))
                        ),
                    ),
                ),
            )
            .values(
                transcription_status=PROCESSING,
                transcription_run_id=run_id,
                transcription_text=None,
                error_message=None,
                transcribed_at=None,
                version=MediaRecord.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1

    async def complete(self, media_id: uuid.UUID, run_id: uuid.UUID, text: str) -> bool:
        q = (
            update(MediaRecord)
            .where(
                MediaRecord.id == media_id,
                MediaRecord.transcription_run_id == run_id,
                MediaRecord.transcription_status == PROCESSING,
            )
            .values(
                transcription_status=COMPLETED,
                transcription_text=text,
                error_message=None,
                transcribed_at=utcnow(),
                version=MediaRecord.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1

    async def fail(self, media_id: uuid.UUID, run_id: uuid.UUID, message: str) -> bool:
        q = (
            update(MediaRecord)
            .where(
                MediaRecord.id == media_id,
                MediaRecord.transcription_run_id == run_id,
                MediaRecord.transcription_status == PROCESSING,
            )
            .values(
                transcription_status=ERROR,
                transcription_text=None,
                error_message=message[:4000],
                version=MediaRecord.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount == 1
