from pathlib import Path
from typing import Protocol, runtime_checkable

@runtime_checkable
class TranscoderPort(Protocol):
    def output_path_for(self, video_path: Path) -> Path: ...

    async def extract_audio(self, video_path: Path) -> Path: ...
