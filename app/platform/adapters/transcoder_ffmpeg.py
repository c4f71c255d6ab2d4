import logging
import shutil
from pathlib import Path

from app.core.errors import TranscodeFailure
from app.core.process import run_process
from app.platform.ports.transcoder import TranscoderPort

logger = logging.getLogger(__name__)

class FfmpegTranscoder(TranscoderPort):
    """Extracts the audio track of a video container into ``<stem>.mp3`` beside it."""

    def __init__(self, binary: str = "ffmpeg", *, timeout: float = 900.0):
        self.binary = binary
        self.timeout = timeout

    def output_path_for(self, video_path: Path) -> Path:
        return video_path.with_name(f"{video_path.stem}.mp3")

    async def extract_audio(self, video_path: Path) -> Path:
        executable = shutil.which(self.binary)
        if executable is None:
            raise TranscodeFailure(f"{self.binary} executable not found")
        audio_path = self.output_path_for(video_path)
        argv = [
            executable, "-nostdin", "-y",
            "-i", str(video_path),
            "-vn", "-map", "a", "-q:a", "0",
            str(audio_path),
        ]
        logger.info("Extracting audio from %s to %s", video_path.name, audio_path.name)
        try:
            result = await run_process(argv, timeout=self.timeout)
        except (FileNotFoundError, PermissionError) as e:
            raise TranscodeFailure(f"{self.binary} could not be started: {e}") from e

        if result.returncode != 0:
            raise TranscodeFailure(f"FFmpeg process exited with code {result.returncode}: {result.stderr_tail(500)}")
        # a container without an audio stream can still leave an empty file behind
        if not audio_path.is_file() or audio_path.stat().st_size == 0:
            raise TranscodeFailure(f"No audio track extracted from {video_path.name}")
        return audio_path
