"""
Transcription orchestrator.

One run takes a media record from ``pending`` (or ``error``) through
``processing`` to ``completed`` or ``error``::

    mark-processing -> resolve-url -> download-file -> prepare-audio-file
        -> run-primary-engine [-> run-fallback-engine] -> save-transcription
        -> cleanup (always)

Every step goes through :class:`StepExecutor`, so it is retried a bounded
number of times and its output is checkpointed; a run re-entered after a
crash replays finished steps. The primary engine step records its failure as
a normal output instead of raising, which makes the choice to fall back part
of the checkpoint: a resumed run neither re-invokes a primary engine that
already failed nor skips the fallback.

``mark-processing`` doubles as the per-record lock. A run that cannot claim
the record (another run holds it, or it is completed and no re-transcription
was forced) ends as ``skipped`` without touching it.

Files created along the way are registered on the run context before they
are written and removed at the end whatever the outcome; removal problems
are logged and never raised.
"""

import logging
import mimetypes
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import ServiceError, NotFound, InvalidState, DownloadFailure
from app.platform.ports.event_bus import EventBusPort
from app.platform.ports.object_storage import ObjectStoragePort
from app.platform.ports.transcoder import TranscoderPort
from app.platform.ports.transcription_engine import TranscriptionEnginePort
from app.modules.media.models import COMPLETED as MEDIA_COMPLETED, ERROR as MEDIA_ERROR
from app.modules.media.repository import MediaRepository
from app.modules.uploads.repository import UploadRepository
from app.modules.transcription.download import MediaDownloader
from app.modules.transcription.executor import StepExecutor
from app.modules.transcription.models import COMPLETED, FAILED, SKIPPED
from app.modules.transcription.schemas import (
    FileUploadedEvent, TranscriptionRetryEvent, wants_force,
    TOPIC_TRANSCRIPTION_COMPLETED, TOPIC_TRANSCRIPTION_FAILED,
)

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = {".mp4", ".mov", ".avi", ".mkv", ".webm", ".flv", ".wmv"}

# presigned URLs expire, so a resolved URL is only replayed while fresh
URL_REUSE_SECONDS = 300

def is_video_file(path: Path) -> bool:
    return path.suffix.lower() in VIDEO_EXTENSIONS

def _extension_for(name: str, mime_type: str) -> str:
    ext = Path(name).suffix.lower()
    if ext:
        return ext
    return mimetypes.guess_extension(mime_type or "") or ""

@dataclass
class RunContext:
    run_id: uuid.UUID
    media_id: uuid.UUID
    storage_id: str
    force: bool
    workdir: Path
    cleanup: list[Path] = field(default_factory=list)

    def track(self, *paths: Path | str) -> None:
        for p in paths:
            p = Path(p)
            if p not in self.cleanup:
                self.cleanup.append(p)

@dataclass
class RunOutcome:
    run_id: uuid.UUID
    media_id: uuid.UUID
    status: str  # completed | failed | skipped
    engine: str | None = None
    error: str | None = None
    text_length: int | None = None
    replayed_steps: list[str] = field(default_factory=list)

class TranscriptionOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: ObjectStoragePort,
        *,
        primary: TranscriptionEnginePort,
        fallback: TranscriptionEnginePort,
        transcoder: TranscoderPort,
        downloader: MediaDownloader,
        scratch_dir: str | Path,
        event_bus: EventBusPort | None = None,
        step_max_attempts: int = 3,
        step_backoff_seconds: float = 1.0,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.primary = primary
        self.fallback = fallback
        self.transcoder = transcoder
        self.downloader = downloader
        self.scratch_dir = Path(scratch_dir)
        self.event_bus = event_bus
        self.step_max_attempts = step_max_attempts
        self.step_backoff_seconds = step_backoff_seconds

    async def execute(self, run_id: uuid.UUID, event: FileUploadedEvent | TranscriptionRetryEvent) -> RunOutcome:
        ctx = RunContext(
            run_id=run_id,
            media_id=event.data.media_id,
            storage_id=event.data.storage_id,
            force=wants_force(event),
            workdir=self.scratch_dir / run_id.hex,
        )
        steps = StepExecutor(
            self.session_factory, run_id,
            max_attempts=self.step_max_attempts, backoff_seconds=self.step_backoff_seconds,
        )
        started = time.monotonic()
        logger.info("Run %s: transcription started for media %s (%s)", run_id, ctx.media_id, event.name)

        try:
            lock = await steps.run("mark-processing", lambda: self._mark_processing(ctx))
        except Exception as e:
            # without the lock the record is not ours to mark as failed
            logger.error(
                "Run %s: could not claim media %s: %s", run_id, ctx.media_id, e,
                exc_info=not isinstance(e, ServiceError),
            )
            return RunOutcome(run_id, ctx.media_id, FAILED, error=self._describe(e))
        if not lock["acquired"]:
            logger.info(
                "Run %s: media %s is %s; duplicate trigger ignored",
                run_id, ctx.media_id, lock.get("status"),
            )
            return RunOutcome(run_id, ctx.media_id, SKIPPED)

        finished = await self._finalized_status(ctx)
        if finished is not None:
            # re-entered after the result was already persisted
            self._cleanup(ctx)
            status = COMPLETED if finished == MEDIA_COMPLETED else FAILED
            return RunOutcome(run_id, ctx.media_id, status, replayed_steps=steps.replayed)

        outcome = RunOutcome(run_id, ctx.media_id, FAILED)
        try:
            text, engine = await self._pipeline(steps, ctx)
            await steps.run("save-transcription", lambda: self._save(ctx, text))
            outcome.status, outcome.engine, outcome.text_length = COMPLETED, engine, len(text)
        except Exception as exc:
            outcome.error = self._describe(exc)
            logger.error("Run %s: transcription failed: %s", run_id, outcome.error, exc_info=not isinstance(exc, ServiceError))
            await self._mark_error(ctx, outcome.error)
        finally:
            self._cleanup(ctx)

        outcome.replayed_steps = list(steps.replayed)
        logger.info(
            "Run %s: finished %s in %.1fs (engine=%s, replayed=%s)",
            run_id, outcome.status, time.monotonic() - started, outcome.engine, ",".join(steps.replayed) or "-",
        )
        await self._publish(outcome)
        return outcome

    # ---- Pipeline ----

    async def _pipeline(self, steps: StepExecutor, ctx: RunContext) -> tuple[str, str]:
        resolved = await steps.run(
            "resolve-url", lambda: self._resolve_url(ctx),
            reuse=lambda out: time.time() - out.get("resolved_at", 0) < URL_REUSE_SECONDS,
        )

        downloaded = await steps.run(
            "download-file", lambda: self._download(ctx, resolved["url"], resolved["extension"]),
            reuse=lambda out: Path(out["path"]).is_file(),
        )
        media_path = Path(downloaded["path"])
        ctx.track(media_path)

        prepared = await steps.run(
            "prepare-audio-file", lambda: self._prepare_audio(ctx, media_path),
            reuse=lambda out: Path(out["path"]).is_file(),
        )
        audio_path = Path(prepared["path"])
        ctx.track(audio_path)

        return await self._transcribe(steps, ctx, audio_path)

    async def _mark_processing(self, ctx: RunContext) -> dict:
        async with self.session_factory() as session:
            repo = MediaRepository(session)
            media = await repo.get(ctx.media_id)
            if media is None:
                raise NotFound(f"Media {ctx.media_id} not found")
            previous = media.transcription_status
            acquired = await repo.claim_for_run(ctx.media_id, ctx.run_id, force=ctx.force)
            await session.commit()
        if not acquired:
            return {"acquired": False, "status": previous}
        logger.info("Run %s: media %s moved %s -> processing", ctx.run_id, ctx.media_id, previous)
        return {"acquired": True, "previous_status": previous}

    async def _finalized_status(self, ctx: RunContext) -> str | None:
        async with self.session_factory() as session:
            media = await MediaRepository(session).get(ctx.media_id)
        if media is None or media.transcription_run_id != ctx.run_id:
            return None
        if media.transcription_status in (MEDIA_COMPLETED, MEDIA_ERROR):
            return media.transcription_status
        return None

    async def _resolve_url(self, ctx: RunContext) -> dict:
        async with self.session_factory() as session:
            media = await MediaRepository(session).get(ctx.media_id)
        if media is None:
            raise NotFound(f"Media {ctx.media_id} not found")
        url = self.storage.get_url(ctx.storage_id)
        if not url:
            raise DownloadFailure("Failed to get file URL")
        return {
            "url": url,
            "extension": _extension_for(media.name, media.mime_type),
            "resolved_at": time.time(),
        }

    async def _download(self, ctx: RunContext, url: str, extension: str) -> dict:
        async with self.session_factory() as session:
            upload = await UploadRepository(session).find_completed_by_storage_id(ctx.storage_id)
        multipart = upload is not None

        ctx.workdir.mkdir(parents=True, exist_ok=True)
        dest = ctx.workdir / f"{uuid.uuid4().hex}{extension}"
        ctx.track(dest)
        size = await self.downloader.download(url, dest, stream=multipart)
        return {"path": str(dest), "multipart": multipart, "bytes": size}

    async def _prepare_audio(self, ctx: RunContext, media_path: Path) -> dict:
        if not is_video_file(media_path):
            logger.info("Run %s: file is already audio, skipping extraction", ctx.run_id)
            return {"path": str(media_path), "extracted": False}
        logger.info("Run %s: file is a video, extracting audio", ctx.run_id)
        ctx.track(self.transcoder.output_path_for(media_path))
        audio_path = await self.transcoder.extract_audio(media_path)
        ctx.track(audio_path)
        return {"path": str(audio_path), "extracted": True}

    async def _transcribe(self, steps: StepExecutor, ctx: RunContext, audio_path: Path) -> tuple[str, str]:
        for engine in (self.primary, self.fallback):
            ctx.track(*engine.output_paths(audio_path))

        # a primary failure is an output, not an exception; one attempt only
        primary = await steps.run(
            "run-primary-engine", lambda: self._attempt_primary(ctx, audio_path), max_attempts=1,
        )
        if primary["ok"]:
            return primary["text"], primary["engine"]

        logger.info("Run %s: primary engine failed (%s), trying the fallback engine", ctx.run_id, primary["error"])
        fallback = await steps.run("run-fallback-engine", lambda: self._run_fallback(ctx, audio_path))
        return fallback["text"], fallback["engine"]

    async def _attempt_primary(self, ctx: RunContext, audio_path: Path) -> dict:
        try:
            text = await self.primary.transcribe(audio_path)
        except (ServiceError, OSError) as e:
            logger.warning("Run %s: %s failed: %s", ctx.run_id, self.primary.name, e)
            return {"ok": False, "engine": self.primary.name, "error": str(e), "code": getattr(e, "code", "IO_ERROR")}
        if not text:
            logger.warning("Run %s: %s produced an empty transcript", ctx.run_id, self.primary.name)
        return {"ok": True, "engine": self.primary.name, "text": text}

    async def _run_fallback(self, ctx: RunContext, audio_path: Path) -> dict:
        text = await self.fallback.transcribe(audio_path)
        if not text:
            logger.warning("Run %s: %s produced an empty transcript", ctx.run_id, self.fallback.name)
        return {"ok": True, "engine": self.fallback.name, "text": text}

    async def _save(self, ctx: RunContext, text: str) -> dict:
        async with self.session_factory() as session:
            saved = await MediaRepository(session).complete(ctx.media_id, ctx.run_id, text)
            await session.commit()
        if not saved:
            raise InvalidState(f"Run {ctx.run_id} no longer holds media {ctx.media_id}")
        logger.info("Run %s: saved transcription of length %d", ctx.run_id, len(text))
        return {"saved": True, "length": len(text)}

    # ---- Failure, cleanup, notifications ----

    @staticmethod
    def _describe(exc: Exception) -> str:
        if isinstance(exc, ServiceError):
            return f"{exc.code}: {exc.message}"
        return str(exc) or exc.__class__.__name__

    async def _mark_error(self, ctx: RunContext, message: str) -> None:
        for attempt in range(1, self.step_max_attempts + 1):
            try:
                async with self.session_factory() as session:
                    marked = await MediaRepository(session).fail(ctx.media_id, ctx.run_id, message)
                    await session.commit()
                if not marked:
                    logger.warning("Run %s: media %s was not processing for this run; error not recorded", ctx.run_id, ctx.media_id)
                return
            except Exception:
                logger.exception("Run %s: recording error status failed (attempt %d)", ctx.run_id, attempt)
                if attempt == self.step_max_attempts:
                    raise

    def _cleanup(self, ctx: RunContext) -> None:
        for path in reversed(ctx.cleanup):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Run %s: could not delete scratch file %s", ctx.run_id, path, exc_info=True)
        if ctx.workdir.exists():
            try:
                shutil.rmtree(ctx.workdir)
            except OSError:
                logger.warning("Run %s: could not remove scratch directory %s", ctx.run_id, ctx.workdir, exc_info=True)
        logger.debug("Run %s: cleaned up %d scratch path(s)", ctx.run_id, len(ctx.cleanup))

    async def _publish(self, outcome: RunOutcome) -> None:
        if self.event_bus is None or outcome.status == SKIPPED:
            return
        topic = TOPIC_TRANSCRIPTION_COMPLETED if outcome.status == COMPLETED else TOPIC_TRANSCRIPTION_FAILED
        try:
            await self.event_bus.publish(topic=topic, key=str(outcome.media_id), value={
                "media_id": str(outcome.media_id),
                "run_id": str(outcome.run_id),
                "status": outcome.status,
                "engine": outcome.engine,
                "error": outcome.error,
            })
        except Exception:
            logger.exception("Run %s: publishing %s failed", outcome.run_id, topic)
