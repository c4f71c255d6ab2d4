import logging
import shutil
from pathlib import Path

from app.core.errors import EngineError, EngineUnavailable, OutputMissing
from app.core.process import run_process
from app.platform.ports.transcription_engine import TranscriptionEnginePort

logger = logging.getLogger(__name__)

class WhisperScriptEngine(TranscriptionEnginePort):
    """
    Fallback engine: ``scripts/whisper_transcribe.py`` executed by a separate
    python interpreter, so it does not share the primary CLI's installation.
    The script writes ``<audio>.txt`` beside its input.
    """
    name = "whisper-script"

    def __init__(self, script: str, *, python: str = "python3", model: str = "turbo", timeout: float = 3600.0):
        self.script = Path(script)
        self.python = python
        self.model = model
        self.timeout = timeout

    def output_paths(self, audio_path: Path) -> list[Path]:
        return [audio_path.with_name(audio_path.name + ".txt")]

    async def transcribe(self, audio_path: Path) -> str:
        interpreter = shutil.which(self.python)
        if interpreter is None:
            raise EngineUnavailable(f"{self.python} interpreter not found")
        if not self.script.is_file():
            raise EngineUnavailable(f"Transcription script not found: {self.script}")
        if not audio_path.is_file():
            raise EngineError(f"Input file does not exist: {audio_path}")

        output = self.output_paths(audio_path)[0]
        argv = [interpreter, str(self.script.resolve()), str(audio_path.resolve()), "--output", str(output.resolve()), "--model", self.model]
        try:
            result = await run_process(argv, timeout=self.timeout)
        except (FileNotFoundError, PermissionError) as e:
            raise EngineUnavailable(f"{self.python} could not be started: {e}") from e

        if result.returncode != 0:
            raise EngineError(
                f"Python process exited with code {result.returncode}: {result.stderr_tail(500)}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        if not output.is_file():
            raise OutputMissing(f"Output file not found: {output}")
        return output.read_text(encoding="utf-8", errors="replace").strip()
