import logging
import uuid
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import NotFound, InvalidArgument
from app.platform.ports.event_bus import EventBusPort
from app.modules.media.models import PROCESSING, COMPLETED
from app.modules.media.repository import MediaRepository
from app.modules.transcription.models import TranscriptionRun
from app.modules.transcription.repository import RunRepository
from app.modules.transcription.schemas import FILE_UPLOADED, TRANSCRIPTION_RETRY, parse_event

logger = logging.getLogger(__name__)

class TranscriptionService:
    def __init__(self, session: AsyncSession, *, event_bus: EventBusPort | None = None, worker=None):
        self.session = session
        self.event_bus = event_bus
        self.worker = worker
        self.media = MediaRepository(session)
        self.runs = RunRepository(session)

    async def trigger_transcription(
        self,
        media_id: uuid.UUID,
        storage_id: str,
        *,
        user_id: uuid.UUID | None = None,
        retry: bool = False,
        force: bool = False,
    ) -> TranscriptionRun | None:
        """
        Queue a transcription run for a media record.

        Returns None when the trigger is a no-op: a live run is already
        processing the record, or it is completed and re-transcription was not
        forced. A record left ``processing`` by a run that has finished is
        queued again.
        """
        data = {"media_id": str(media_id), "storage_id": storage_id}
        if user_id is not None:
            data["user_id"] = str(user_id)
        if retry or force:
            event = parse_event({"name": TRANSCRIPTION_RETRY, "data": {**data, "force": force}})
        else:
            event = parse_event({"name": FILE_UPLOADED, "data": data})

        media = await self.media.get(event.data.media_id)
        if media is None:
            raise NotFound("Media not found")
        if media.storage_id != event.data.storage_id:
            raise InvalidArgument("storage_id does not belong to this media record")
        if media.transcription_status == PROCESSING:
            if not await self.runs.is_finished(media.transcription_run_id):
                logger.info("Media %s is already processing; trigger ignored", media.id)
                return None
            logger.warning(
                "Media %s is still marked processing by finished run %s; queueing a new run",
                media.id, media.transcription_run_id,
            )
        if media.transcription_status == COMPLETED and not force:
            logger.info("Media %s is already transcribed; pass force to transcribe again", media.id)
            return None

        payload = event.model_dump(mode="json")
        run = await self.runs.enqueue(media.id, event_name=event.name, payload=payload)
        await self.session.commit()
        logger.info("Queued transcription run %s for media %s (%s)", run.id, media.id, event.name)

        if self.event_bus is not None:
            try:
                await self.event_bus.publish(topic=event.name, key=str(media.id), value=payload)
            except Exception:
                logger.exception("Publishing %s for media %s failed", event.name, media.id)
        if self.worker is not None:
            self.worker.notify()
        return run

    async def list_runs(self, media_id: uuid.UUID) -> Sequence[TranscriptionRun]:
        return await self.runs.list_for_media(media_id)
