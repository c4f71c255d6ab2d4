import asyncio
import uuid
from contextlib import asynccontextmanager

import httpx
import pytest

from app.core.config import settings
from app.core.db import make_engine, make_sessionmaker, init_models
from app.core.errors import InvalidArgument, Incomplete
from app.core.security import issue_token
from app.main import create_app
from app.platform.adapters.storage_local import LocalFilesystemStorage
from app.platform.provider_registry import ProviderRegistry
from app.clients.upload_driver import UploadClientDriver

from conftest import FakeEngine, FakeTranscoder, FakeBus

BASE = "http://testserver"


class RecordingEngine(FakeEngine):
    """Keeps the bytes it was given, since scratch files are gone after the run."""
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.inputs = []

    async def transcribe(self, audio_path):
        self.inputs.append(audio_path.read_bytes())
        return await super().transcribe(audio_path)


class FakeProviders(ProviderRegistry):
    def __init__(self, root):
        super().__init__(settings)
        self.storage = LocalFilesystemStorage(str(root / "store"), public_url=f"{BASE}{settings.API_PREFIX}/storage")
        self.bus = FakeBus()
        self.primary = RecordingEngine("primary", text="api transcript")
        self.fallback = FakeEngine("fallback", text="fallback transcript")

    def object_storage(self):
        return self.storage

    def event_bus(self):
        return self.bus

    def primary_engine(self):
        return self.primary

    def fallback_engine(self):
        return self.fallback

    def transcoder(self):
        return FakeTranscoder()


class FlakyTransport(httpx.AsyncBaseTransport):
    """Drops the first ``failures`` PUT requests on the floor."""
    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.puts = 0

    async def handle_async_request(self, request):
        if request.method == "PUT":
            self.puts += 1
            if self.puts <= self.failures:
                raise httpx.ConnectError("connection reset", request=request)
        return await self.inner.handle_async_request(request)


@pytest.fixture
def service(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "SCRATCH_DIR", str(tmp_path / "scratch"))
    monkeypatch.setattr(settings, "STEP_RETRY_BACKOFF_SECONDS", 0)

    @asynccontextmanager
    async def _service():
        engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}")
        await init_models(engine)
        providers = FakeProviders(tmp_path)
        app = create_app(providers, session_factory=make_sessionmaker(engine), engine=engine, run_worker=False)
        transport = httpx.ASGITransport(app=app)
        app.state.orchestrator.downloader.client_factory = lambda **kw: httpx.AsyncClient(transport=transport, **kw)
        try:
            yield app, providers, transport
        finally:
            await engine.dispose()
    return _service


def make_file(tmp_path, name, size):
    path = tmp_path / name
    path.write_bytes(bytes(i % 251 for i in range(size)))
    return path


def test_chunked_upload_to_transcript(service, tmp_path):
    path = make_file(tmp_path, "lecture.mp3", 2560)

    async def scenario():
        async with service() as (app, providers, transport):
            async with httpx.AsyncClient(transport=transport, base_url=BASE) as client:
                driver = UploadClientDriver(client, chunk_size=1024, retry_backoff=0)
                media = await driver.upload_media(path)
                assert media["transcription_status"] == "pending"
                ran = await app.state.worker.run_pending()
                transcription = (await client.get(f"/api/v1/media/{media['id']}/transcription")).json()
                listing = (await client.get("/api/v1/media")).json()
                return media, ran, transcription, listing, providers

    media, ran, transcription, listing, providers = asyncio.run(scenario())
    assert media["name"] == "lecture.mp3"
    assert media["size_bytes"] == 2560
    assert ran == 1
    assert transcription["status"] == "completed"
    assert transcription["text"] == "api transcript"
    assert transcription["error"] is None
    assert providers.primary.inputs == [path.read_bytes()]
    assert [m["id"] for m in listing] == [media["id"]]
    assert [t for t, _, _ in providers.bus.published] == ["media/file.uploaded", "media/transcription.completed"]


def test_single_shot_upload(service, tmp_path):
    path = make_file(tmp_path, "memo.wav", 1024)

    async def scenario():
        async with service() as (app, providers, transport):
            async with httpx.AsyncClient(transport=transport, base_url=BASE) as client:
                driver = UploadClientDriver(client, chunk_size=1024)
                result = await driver.upload_file(path, "audio/wav")
                status = (await client.get(f"/api/v1/storage/objects/{result.storage_id}"))
                return result, status

    result, response = asyncio.run(scenario())
    assert result.num_chunks == 0
    assert response.status_code == 200
    assert response.content == path.read_bytes()
    assert response.headers["content-type"].startswith("audio/wav")


def test_driver_retries_transient_put_failures(service, tmp_path):
    path = make_file(tmp_path, "noisy.mp3", 3000)

    async def scenario():
        async with service() as (app, providers, transport):
            flaky = FlakyTransport(transport, failures=2)
            async with httpx.AsyncClient(transport=flaky, base_url=BASE) as client:
                driver = UploadClientDriver(client, chunk_size=1000, max_retries=3, retry_backoff=0)
                result = await driver.upload_file(path)
                upload = (await client.get(f"/api/v1/uploads/{result.upload_id}")).json()
                return result, upload, flaky

    result, upload, flaky = asyncio.run(scenario())
    assert result.num_chunks == 3
    assert upload["stored_chunks"] == 3
    assert upload["is_complete"] is True
    assert flaky.puts == 5


def test_driver_gives_up_after_bounded_retries(service, tmp_path):
    path = make_file(tmp_path, "dead.mp3", 3000)

    async def scenario():
        async with service() as (app, providers, transport):
            flaky = FlakyTransport(transport, failures=100)
            async with httpx.AsyncClient(transport=flaky, base_url=BASE) as client:
                driver = UploadClientDriver(client, chunk_size=1000, max_retries=3, retry_backoff=0)
                with pytest.raises(httpx.ConnectError):
                    await driver.upload_file(path)
                return flaky

    assert asyncio.run(scenario()).puts == 4


def test_manager_errors_map_to_http_and_back(service):
    async def scenario():
        async with service() as (app, providers, transport):
            async with httpx.AsyncClient(transport=transport, base_url=BASE) as client:
                bad = await client.post("/api/v1/uploads", json={"num_chunks": 0})
                upload_id = (await client.post("/api/v1/uploads", json={"num_chunks": 2})).json()["upload_id"]
                out_of_range = await client.post(f"/api/v1/uploads/{upload_id}/chunks/5/slot")
                incomplete = await client.post(f"/api/v1/uploads/{upload_id}/complete", json={"content_type": "audio/wav"})
                missing = await client.get("/api/v1/uploads/nope")

                driver = UploadClientDriver(client)
                with pytest.raises(InvalidArgument):
                    await driver._api("POST", "/uploads", json={"num_chunks": -4})
                with pytest.raises(Incomplete):
                    await driver._api("POST", f"/uploads/{upload_id}/complete", json={"content_type": "audio/wav"})
                return bad, out_of_range, incomplete, missing

    bad, out_of_range, incomplete, missing = asyncio.run(scenario())
    assert bad.status_code == 400 and bad.json()["code"] == "INVALID_ARGUMENT"
    assert out_of_range.status_code == 400 and out_of_range.json()["code"] == "OUT_OF_RANGE"
    assert incomplete.status_code == 409 and incomplete.json()["code"] == "INCOMPLETE"
    assert missing.status_code == 404 and missing.json()["code"] == "NOT_FOUND"


def test_media_validation_and_lookup(service):
    async def scenario():
        async with service() as (app, providers, transport):
            storage_id = providers.storage.put_bytes(b"%PDF", "application/pdf")
            async with httpx.AsyncClient(transport=transport, base_url=BASE) as client:
                not_media = await client.post("/api/v1/media", json={
                    "name": "doc.pdf", "storage_id": storage_id, "size_bytes": 4, "mime_type": "application/pdf",
                })
                unknown_object = await client.post("/api/v1/media", json={
                    "name": "a.mp3", "storage_id": "missing", "size_bytes": 4, "mime_type": "audio/mpeg",
                })
                unknown_media = await client.get(f"/api/v1/media/{uuid.uuid4()}")
                return not_media, unknown_object, unknown_media

    not_media, unknown_object, unknown_media = asyncio.run(scenario())
    assert not_media.status_code == 400
    assert unknown_object.status_code == 400
    assert unknown_media.status_code == 404


def test_form_upload_and_forced_retranscription(service):
    async def scenario():
        async with service() as (app, providers, transport):
            async with httpx.AsyncClient(transport=transport, base_url=BASE) as client:
                created = (await client.post(
                    "/api/v1/media/upload",
                    files={"file": ("clip.mp3", b"ID3 tiny clip", "audio/mpeg")},
                )).json()
                await app.state.worker.run_pending()

                providers.primary.text = "better transcript"
                noop = await client.post(f"/api/v1/media/{created['id']}/transcribe", json={"force": False})
                assert await app.state.worker.run_pending() == 0
                forced = await client.post(f"/api/v1/media/{created['id']}/transcribe", json={"force": True})
                await app.state.worker.run_pending()
                final = (await client.get(f"/api/v1/media/{created['id']}")).json()
                return created, noop, forced, final

    created, noop, forced, final = asyncio.run(scenario())
    assert created["mime_type"] == "audio/mpeg"
    assert noop.status_code == 202
    assert forced.status_code == 202
    assert final["transcription_status"] == "completed"
    assert final["transcription_text"] == "better transcript"


def test_scopes_are_enforced(service):
    token = issue_token(uuid.uuid4(), ["media:read"])

    async def scenario():
        async with service() as (app, providers, transport):
            async with httpx.AsyncClient(transport=transport, base_url=BASE, headers={"authorization": f"Bearer {token}"}) as client:
                listed = await client.get("/api/v1/media")
                denied = await client.post("/api/v1/uploads", json={"num_chunks": 1})
                return listed, denied

    listed, denied = asyncio.run(scenario())
    assert listed.status_code == 200
    assert listed.json() == []
    assert denied.status_code == 403


def test_health(service):
    async def scenario():
        async with service() as (app, providers, transport):
            async with httpx.AsyncClient(transport=transport, base_url=BASE) as client:
                return await client.get("/api/v1/health")

    assert asyncio.run(scenario()).json() == {"status": "ok"}
