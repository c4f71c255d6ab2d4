import asyncio
import uuid

import pytest

from app.core.errors import InvalidArgument, NotFound, EngineError
from app.modules.media.models import PROCESSING, COMPLETED as MEDIA_COMPLETED
from app.modules.media.repository import MediaRepository
from app.modules.transcription.models import QUEUED, RUNNING, COMPLETED, FAILED
from app.modules.transcription.repository import RunRepository
from app.modules.transcription.service import TranscriptionService
from app.modules.transcription.worker import TranscriptionWorker

from conftest import FakeEngine, FakeBus, seed_media, load_media


async def list_runs(sf, media_id):
    async with sf() as session:
        return list(await RunRepository(session).list_for_media(media_id))


def test_trigger_queues_a_run_and_worker_executes_it(database, storage, make_orchestrator):
    bus = FakeBus()
    primary = FakeEngine("primary", text="queued text")

    async def scenario():
        async with database() as sf:
            media_id, storage_id = await seed_media(sf, storage)
            worker = TranscriptionWorker(sf, make_orchestrator(sf, primary=primary), max_concurrency=2)
            async with sf() as session:
                run = await TranscriptionService(session, event_bus=bus, worker=worker).trigger_transcription(media_id, storage_id)
            ran = await worker.run_pending()
            return run, ran, await list_runs(sf, media_id), await load_media(sf, media_id)

    run, ran, runs, media = asyncio.run(scenario())
    assert run is not None
    assert run.event_name == "media/file.uploaded"
    assert ran == 1
    assert [r.status for r in runs] == [COMPLETED]
    assert runs[0].attempts == 1
    assert runs[0].finished_at is not None
    assert media.transcription_text == "queued text"
    assert bus.published[0][0] == "media/file.uploaded"


def test_trigger_while_processing_is_a_noop(database, storage):
    async def scenario():
        async with database() as sf:
            media_id, storage_id = await seed_media(sf, storage)
            async with sf() as session:
                await MediaRepository(session).claim_for_run(media_id, uuid.uuid4())
                await session.commit()
            async with sf() as session:
                run = await TranscriptionService(session).trigger_transcription(media_id, storage_id)
            return run, await list_runs(sf, media_id)

    run, runs = asyncio.run(scenario())
    assert run is None
    assert runs == []


def test_trigger_validates_its_event(database, storage):
    async def scenario():
        async with database() as sf:
            media_id, storage_id = await seed_media(sf, storage)
            async with sf() as session:
                service = TranscriptionService(session)
                with pytest.raises(InvalidArgument):
                    await service.trigger_transcription(media_id, "")
                with pytest.raises(InvalidArgument):
                    await service.trigger_transcription(media_id, "someone-elses-object")
                with pytest.raises(NotFound):
                    await service.trigger_transcription(uuid.uuid4(), storage_id)

    asyncio.run(scenario())


def test_duplicate_queued_runs_transcribe_once(database, storage, make_orchestrator):
    primary = FakeEngine("primary")

    async def scenario():
        async with database() as sf:
            media_id, storage_id = await seed_media(sf, storage)
            async with sf() as session:
                service = TranscriptionService(session)
                await service.trigger_transcription(media_id, storage_id)
                await service.trigger_transcription(media_id, storage_id)
            worker = TranscriptionWorker(sf, make_orchestrator(sf, primary=primary), max_concurrency=2)
            await worker.run_pending()
            return await list_runs(sf, media_id)

    runs = asyncio.run(scenario())
    assert sorted(r.status for r in runs) == ["completed", "skipped"]
    assert len(primary.calls) == 1


def test_interrupted_runs_are_requeued_with_the_same_id(database, storage, make_orchestrator):
    async def scenario():
        async with database() as sf:
            media_id, storage_id = await seed_media(sf, storage)
            async with sf() as session:
                run = await TranscriptionService(session).trigger_transcription(media_id, storage_id)
            async with sf() as session:
                claimed = await RunRepository(session).claim_batch(limit=5)
                await session.commit()
            assert [r.status for r in claimed] == [RUNNING]

            worker = TranscriptionWorker(sf, make_orchestrator(sf), poll_interval=0.05)
            await worker.start()
            try:
                for _ in range(100):
                    runs = await list_runs(sf, media_id)
                    if runs[0].status not in (QUEUED, RUNNING):
                        break
                    await asyncio.sleep(0.05)
            finally:
                await worker.stop()
            return run, runs

    run, runs = asyncio.run(scenario())
    assert [r.id for r in runs] == [run.id]
    assert runs[0].status == COMPLETED
    assert runs[0].attempts == 2


def test_malformed_run_payload_fails_the_run(database, storage, make_orchestrator):
    async def scenario():
        async with database() as sf:
            media_id, _ = await seed_media(sf, storage)
            async with sf() as session:
                await RunRepository(session).enqueue(media_id, event_name="media/file.uploaded", payload={"name": "bogus"})
                await session.commit()
            await TranscriptionWorker(sf, make_orchestrator(sf)).run_pending()
            return await list_runs(sf, media_id)

    runs = asyncio.run(scenario())
    assert runs[0].status == FAILED
    assert "Malformed" in runs[0].last_error


def test_record_left_processing_by_a_finished_run_can_be_retried(database, storage, make_orchestrator, monkeypatch):
    primary = FakeEngine("primary", error=EngineError("primary down", returncode=1))
    fallback = FakeEngine("fallback", error=EngineError("fallback down", returncode=1))

    async def refuse_fail(self, media_id, run_id, message):
        raise OSError("database went away")

    async def scenario():
        async with database() as sf:
            media_id, storage_id = await seed_media(sf, storage)
            worker = TranscriptionWorker(sf, make_orchestrator(sf, primary=primary, fallback=fallback))
            async with sf() as session:
                await TranscriptionService(session).trigger_transcription(media_id, storage_id)

            with monkeypatch.context() as m:
                m.setattr(MediaRepository, "fail", refuse_fail)
                await worker.run_pending()
            stuck = await load_media(sf, media_id)

            primary.error = fallback.error = None
            primary.text = "second time lucky"
            async with sf() as session:
                run = await TranscriptionService(session).trigger_transcription(media_id, storage_id, retry=True)
            await worker.run_pending()
            return stuck, run, await list_runs(sf, media_id), await load_media(sf, media_id)

    stuck, run, runs, media = asyncio.run(scenario())
    assert stuck.transcription_status == PROCESSING
    assert run is not None
    assert [r.status for r in runs] == [FAILED, COMPLETED]
    assert media.transcription_status == MEDIA_COMPLETED
    assert media.transcription_text == "second time lucky"


class GatedEngine(FakeEngine):
    """Holds its first transcription until ``gate`` is set."""
    def __init__(self, gate):
        super().__init__("primary", text="gated")
        self.gate = gate

    async def transcribe(self, audio_path):
        first = not self.calls
        text = await super().transcribe(audio_path)
        if first:
            await self.gate.wait()
        return text


def test_a_slow_run_does_not_hold_back_the_queue(database, storage, make_orchestrator):
    async def scenario():
        gate = asyncio.Event()
        primary = GatedEngine(gate)
        async with database() as sf:
            media = [await seed_media(sf, storage, name=f"talk{i}.mp3") for i in range(3)]
            async with sf() as session:
                service = TranscriptionService(session)
                for media_id, storage_id in media:
                    await service.trigger_transcription(media_id, storage_id)
            worker = TranscriptionWorker(sf, make_orchestrator(sf, primary=primary), max_concurrency=2, poll_interval=0.05)
            pending = asyncio.create_task(worker.run_pending())
            for _ in range(200):
                if len(primary.calls) == 3:
                    break
                await asyncio.sleep(0.01)
            calls_while_blocked = len(primary.calls)
            gate.set()
            ran = await pending
            statuses = [(await list_runs(sf, media_id))[0].status for media_id, _ in media]
            return calls_while_blocked, ran, statuses

    calls_while_blocked, ran, statuses = asyncio.run(scenario())
    assert calls_while_blocked == 3
    assert ran == 3
    assert statuses == [COMPLETED, COMPLETED, COMPLETED]
