from app.core.config import Settings, settings as default_settings
from app.platform.ports.object_storage import ObjectStoragePort
from app.platform.ports.event_bus import EventBusPort
from app.platform.ports.transcription_engine import TranscriptionEnginePort
from app.platform.ports.transcoder import TranscoderPort
from app.platform.adapters.storage_local import LocalFilesystemStorage
from app.platform.adapters.bus_noop import NoopEventBus
from app.platform.adapters.engine_whisper_cli import WhisperCliEngine
from app.platform.adapters.engine_whisper_script import WhisperScriptEngine
from app.platform.adapters.transcoder_ffmpeg import FfmpegTranscoder
from app.modules.transcription.download import MediaDownloader

class ProviderRegistry:
    """
    Builds the external collaborators from settings, once per process.

    The application factory owns the instance and hands the providers to the
    services that need them; nothing reaches for a module-level client.
    """
    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self._object_storage: ObjectStoragePort | None = None
        self._event_bus: EventBusPort | None = None

    def object_storage(self) -> ObjectStoragePort:
        if self._object_storage is None:
            if self.settings.OBJECT_STORAGE_PROVIDER == "s3":
                from app.platform.adapters.storage_s3 import S3Storage
                self._object_storage = S3Storage()
            else:
                self._object_storage = LocalFilesystemStorage(self.settings.LOCAL_STORAGE_ROOT)
        return self._object_storage

    def event_bus(self) -> EventBusPort:
        if self._event_bus is None:
            prov = (self.settings.EVENT_BUS_PROVIDER or "noop").lower()
            if prov == "redis":
                from app.platform.adapters.bus_redis import RedisEventBus
                self._event_bus = RedisEventBus()
            else:
                self._event_bus = NoopEventBus()
        return self._event_bus

    def primary_engine(self) -> TranscriptionEnginePort:
        return WhisperCliEngine(
            self.settings.PRIMARY_ENGINE_BINARY,
            model=self.settings.PRIMARY_ENGINE_MODEL,
            timeout=self.settings.ENGINE_TIMEOUT_SECONDS,
        )

    def fallback_engine(self) -> TranscriptionEnginePort:
        return WhisperScriptEngine(
            self.settings.FALLBACK_ENGINE_SCRIPT,
            python=self.settings.FALLBACK_ENGINE_PYTHON,
            model=self.settings.FALLBACK_ENGINE_MODEL,
            timeout=self.settings.ENGINE_TIMEOUT_SECONDS,
        )

    def transcoder(self) -> TranscoderPort:
        return FfmpegTranscoder(self.settings.TRANSCODER_BINARY, timeout=self.settings.TRANSCODE_TIMEOUT_SECONDS)

    def downloader(self) -> MediaDownloader:
        return MediaDownloader(timeout=self.settings.DOWNLOAD_TIMEOUT_SECONDS, chunk_bytes=self.settings.DOWNLOAD_CHUNK_BYTES)
