import logging
import os
import shutil
from pathlib import Path

from app.core.errors import EngineError, EngineUnavailable, OutputMissing
from app.core.process import run_process
from app.platform.ports.transcription_engine import TranscriptionEnginePort

logger = logging.getLogger(__name__)

class WhisperCliEngine(TranscriptionEnginePort):
    """
    Primary engine: the ``whisper`` command line tool.

    The CLI writes ``<output_dir>/<stem>.txt`` next to the input; when that
    exact name is missing, a ``.txt`` file in the same directory whose name
    contains the stem is accepted instead.
    """
    name = "whisper-cli"

    def __init__(self, binary: str = "whisper", *, model: str = "turbo", timeout: float = 3600.0, language: str | None = None):
        self.binary = binary
        self.model = model
        self.timeout = timeout
        self.language = language

    def output_paths(self, audio_path: Path) -> list[Path]:
        return [audio_path.parent / f"{audio_path.stem}.txt"]

    def _command(self, audio_path: Path, executable: str) -> list[str]:
        argv = [
            executable,
            str(audio_path.resolve()),
            "--output_dir", str(audio_path.parent.resolve()),
            "--output_format", "txt",
            "--task", "transcribe",
            "--model", self.model,
        ]
        if self.language:
            argv += ["--language", self.language]
        return argv

    async def transcribe(self, audio_path: Path) -> str:
        executable = shutil.which(self.binary)
        if executable is None:
            raise EngineUnavailable(f"{self.binary} executable not found")
        if not audio_path.is_file():
            raise EngineError(f"Input file does not exist: {audio_path}")

        try:
            result = await run_process(self._command(audio_path, executable), timeout=self.timeout)
        except (FileNotFoundError, PermissionError) as e:
            raise EngineUnavailable(f"{self.binary} could not be started: {e}") from e

        if result.returncode != 0:
            raise EngineError(
                f"{self.binary} exited with code {result.returncode}: {result.stderr_tail(500)}",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        expected = self.output_paths(audio_path)[0]
        if expected.is_file():
            return expected.read_text(encoding="utf-8", errors="replace").strip()

        logger.warning("Expected output file not found: %s", expected)
        for candidate in sorted(os.listdir(audio_path.parent)):
            if audio_path.stem in candidate and candidate.endswith(".txt"):
                logger.info("Using similarly named output file %s", candidate)
                return (audio_path.parent / candidate).read_text(encoding="utf-8", errors="replace").strip()
        raise OutputMissing(f"Output file not found: {expected}")
