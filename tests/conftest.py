import os
import stat
import tempfile
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

# settings and the module-level engine are built at import time
_ROOT = tempfile.mkdtemp(prefix="transcribe-tests-")
os.environ["ENV"] = "local"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_ROOT}/app.db"
os.environ["LOCAL_STORAGE_ROOT"] = os.path.join(_ROOT, "media")
os.environ["SCRATCH_DIR"] = os.path.join(_ROOT, "outputs")
os.environ["EVENT_BUS_PROVIDER"] = "noop"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"

import httpx
import pytest

from app.core.db import make_engine, make_sessionmaker, init_models
from app.platform.adapters.storage_local import LocalFilesystemStorage
from app.modules.media.repository import MediaRepository
from app.modules.transcription.download import MediaDownloader
from app.modules.transcription.orchestrator import TranscriptionOrchestrator
from app.modules.transcription.schemas import parse_event, FILE_UPLOADED, TRANSCRIPTION_RETRY

OWNER = uuid.UUID("00000000-0000-0000-0000-000000000001")


class FakeEngine:
    """Writes its output file like a real engine, then returns text or raises."""
    def __init__(self, name, text="hello world", error=None, fail_times=None):
        self.name = name
        self.text = text
        self.error = error
        self.fail_times = fail_times  # fail only the first N calls
        self.calls = []

    def output_paths(self, audio_path):
        return [audio_path.with_name(f"{audio_path.name}.{self.name}.txt")]

    async def transcribe(self, audio_path):
        self.calls.append(audio_path)
        assert audio_path.is_file()
        self.output_paths(audio_path)[0].write_text(self.text)
        if self.error is not None and (self.fail_times is None or len(self.calls) <= self.fail_times):
            raise self.error
        return self.text


class FakeTranscoder:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def output_path_for(self, video_path):
        return video_path.with_name(f"{video_path.stem}.mp3")

    async def extract_audio(self, video_path):
        self.calls.append(video_path)
        if self.error is not None:
            raise self.error
        out = self.output_path_for(video_path)
        out.write_bytes(b"ID3 audio")
        return out


class FakeBus:
    def __init__(self):
        self.published = []

    async def publish(self, topic, key, value, headers=None):
        self.published.append((topic, key, value))


def storage_transport(storage: LocalFilesystemStorage) -> httpx.MockTransport:
    """Serves ``.../objects/<id>`` from a local store, like the API's object route."""
    def handler(request: httpx.Request) -> httpx.Response:
        storage_id = request.url.path.rsplit("/", 1)[-1]
        path = storage.path_of(storage_id)
        if path is None:
            return httpx.Response(404)
        with open(path, "rb") as f:
            return httpx.Response(200, content=f.read())
    return httpx.MockTransport(handler)


def write_script(path: Path, body: str) -> Path:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


def file_event(media_id, storage_id):
    return parse_event({"name": FILE_UPLOADED, "data": {"media_id": str(media_id), "storage_id": storage_id}})


def retry_event(media_id, storage_id, force=False):
    return parse_event({"name": TRANSCRIPTION_RETRY, "data": {"media_id": str(media_id), "storage_id": storage_id, "force": force}})


async def seed_media(session_factory, storage, *, data=b"RIFF fake audio", name="talk.mp3", mime_type="audio/mpeg"):
    storage_id = storage.put_bytes(data, mime_type)
    async with session_factory() as session:
        obj = await MediaRepository(session).create(
            OWNER, name=name, storage_id=storage_id, size_bytes=len(data), mime_type=mime_type,
        )
        await session.commit()
        return obj.id, storage_id


async def load_media(session_factory, media_id):
    async with session_factory() as session:
        return await MediaRepository(session).get(media_id)


@pytest.fixture
def database(tmp_path):
    """Async context manager yielding a session factory over a fresh sqlite file."""
    @asynccontextmanager
    async def _database():
        engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
        await init_models(engine)
        try:
            yield make_sessionmaker(engine)
        finally:
            await engine.dispose()
    return _database


@pytest.fixture
def storage(tmp_path):
    return LocalFilesystemStorage(str(tmp_path / "store"), public_url="http://storage.test")


@pytest.fixture
def scratch(tmp_path):
    return tmp_path / "scratch"


@pytest.fixture
def make_orchestrator(storage, scratch):
    def _make(session_factory, *, primary=None, fallback=None, transcoder=None, event_bus=None, step_max_attempts=3):
        downloader = MediaDownloader(
            lambda **kw: httpx.AsyncClient(transport=storage_transport(storage), **kw),
            timeout=5,
        )
        return TranscriptionOrchestrator(
            session_factory,
            storage,
            primary=primary or FakeEngine("primary", text="primary text"),
            fallback=fallback or FakeEngine("fallback", text="fallback text"),
            transcoder=transcoder or FakeTranscoder(),
            downloader=downloader,
            scratch_dir=scratch,
            event_bus=event_bus,
            step_max_attempts=step_max_attempts,
            step_backoff_seconds=0,
        )
    return _make


def scratch_files(scratch: Path) -> list[Path]:
    if not scratch.exists():
        return []
    return [p for p in scratch.rglob("*")]
