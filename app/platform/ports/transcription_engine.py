from pathlib import Path
from typing import Protocol, runtime_checkable

@runtime_checkable
class TranscriptionEnginePort(Protocol):
    """file -> text. Raises EngineUnavailable, EngineError, OutputMissing or Timeout."""
    name: str

    async def transcribe(self, audio_path: Path) -> str: ...

    def output_paths(self, audio_path: Path) -> list[Path]: ...
