import uuid
from typing import Sequence
from sqlalchemy import select, and_, update
from sqlalchemy.ext.asyncio import AsyncSession
from app.core.base import utcnow
from app.modules.transcription.models import TranscriptionRun, StepCheckpoint, QUEUED, RUNNING, FINISHED

class RunRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enqueue(self, media_id: uuid.UUID, *, event_name: str, payload: dict) -> TranscriptionRun:
        obj = TranscriptionRun(
            media_id=media_id,
            event_name=event_name,
            payload=payload,
            status=QUEUED,
            attempts=0,
            queued_at=utcnow(),
        )
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def get(self, run_id: uuid.UUID) -> TranscriptionRun | None:
        q = select(TranscriptionRun).where(TranscriptionRun.id == run_id).execution_options(populate_existing=True)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def is_finished(self, run_id: uuid.UUID | None) -> bool:
        if run_id is None:
            return False
        run = await self.get(run_id)
        return run is not None and run.status in FINISHED

    async def list_for_media(self, media_id: uuid.UUID) -> Sequence[TranscriptionRun]:
        q = select(TranscriptionRun).where(TranscriptionRun.media_id == media_id).order_by(TranscriptionRun.queued_at.asc())
        res = await self.session.execute(q)
        return res.scalars().all()

    async def claim_batch(self, limit: int) -> list[TranscriptionRun]:
        # SELECT ... FOR UPDATE SKIP LOCKED (ignored by sqlite, which serializes writers anyway)
        q = (
            select(TranscriptionRun)
            .where(
                and_(
                    TranscriptionRun.deleted_at.is_(None),
                    TranscriptionRun.status == QUEUED,
                )
            )
            .order_by(TranscriptionRun.queued_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        res = await self.session.execute(q)
        rows = list(res.scalars().all())
        now = utcnow()
        for r in rows:
            r.status = RUNNING
            r.attempts = (r.attempts or 0) + 1
            r.started_at = now
        await self.session.flush()
        return rows

    async def requeue_interrupted(self) -> int:
        """Runs left ``running`` by a crashed process go back to the queue with the same id."""
        q = (
            update(TranscriptionRun)
            .where(TranscriptionRun.status == RUNNING, TranscriptionRun.deleted_at.is_(None))
            .values(status=QUEUED)
            .execution_options(synchronize_session=False)
        )
        res = await self.session.execute(q)
        return res.rowcount or 0

    async def finish(self, run_id: uuid.UUID, status: str, error: str | None = None) -> None:
        q = (
            update(TranscriptionRun)
            .where(TranscriptionRun.id == run_id)
            .values(status=status, finished_at=utcnow(), last_error=error[:2000] if error else None)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(q)

class CheckpointRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, run_id: uuid.UUID, step_name: str) -> StepCheckpoint | None:
        q = select(StepCheckpoint).where(StepCheckpoint.run_id == run_id, StepCheckpoint.step_name == step_name)
        res = await self.session.execute(q)
        return res.scalar_one_or_none()

    async def save(self, run_id: uuid.UUID, step_name: str, output: dict, attempts: int) -> StepCheckpoint:
        existing = await self.get(run_id, step_name)
        if existing is not None:
            existing.output = output
            existing.attempts = attempts
            await self.session.flush()
            return existing
        obj = StepCheckpoint(run_id=run_id, step_name=step_name, output=output, attempts=attempts)
        self.session.add(obj)
        await self.session.flush()
        return obj

    async def delete(self, run_id: uuid.UUID, step_name: str) -> None:
        obj = await self.get(run_id, step_name)
        if obj is not None:
            await self.session.delete(obj)
            await self.session.flush()

    async def list_for_run(self, run_id: uuid.UUID) -> Sequence[StepCheckpoint]:
        q = select(StepCheckpoint).where(StepCheckpoint.run_id == run_id).order_by(StepCheckpoint.created_at.asc())
        res = await self.session.execute(q)
        return res.scalars().all()
