import uuid
from typing import Annotated, Literal, Union
from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from app.core.errors import InvalidArgument

# event names
FILE_UPLOADED = "media/file.uploaded"
TRANSCRIPTION_RETRY = "media/transcription.retry"

# lifecycle topics published on the event bus
TOPIC_TRANSCRIPTION_COMPLETED = "media/transcription.completed"
TOPIC_TRANSCRIPTION_FAILED = "media/transcription.failed"

class TranscriptionEventData(BaseModel):
    media_id: uuid.UUID
    storage_id: str = Field(..., min_length=1)
    user_id: uuid.UUID | None = None

class RetryEventData(TranscriptionEventData):
    force: bool = False

class FileUploadedEvent(BaseModel):
    name: Literal["media/file.uploaded"]
    data: TranscriptionEventData

class TranscriptionRetryEvent(BaseModel):
    name: Literal["media/transcription.retry"]
    data: RetryEventData

TranscriptionEvent = Annotated[Union[FileUploadedEvent, TranscriptionRetryEvent], Field(discriminator="name")]

_event_adapter = TypeAdapter(TranscriptionEvent)

def parse_event(raw: dict) -> FileUploadedEvent | TranscriptionRetryEvent:
    try:
        return _event_adapter.validate_python(raw)
    except ValidationError as e:
        raise InvalidArgument(f"Malformed transcription event: {e.errors(include_url=False)}") from e

def wants_force(event: FileUploadedEvent | TranscriptionRetryEvent) -> bool:
    return isinstance(event, TranscriptionRetryEvent) and event.data.force

class RunOut(BaseModel):
    id: uuid.UUID
    media_id: uuid.UUID
    event_name: str
    status: str
    attempts: int
    last_error: str | None

    class Config:
        from_attributes = True
