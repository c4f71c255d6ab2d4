from typing import Protocol, runtime_checkable

@runtime_checkable
class EventBusPort(Protocol):
    """Fire-and-forget notifications about upload and transcription lifecycle changes."""
    async def publish(self, topic: str, key: str, value: dict, headers: dict | None = None) -> None: ...
