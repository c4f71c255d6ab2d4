import uuid
from datetime import datetime
from pydantic import BaseModel, Field

class MediaCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=512)
    storage_id: str = Field(..., min_length=1, max_length=255)
    size_bytes: int = Field(..., ge=0)
    mime_type: str = Field(..., max_length=128)
    description: str | None = None
    duration_ms: int | None = Field(default=None, ge=0)

class MediaOut(BaseModel):
    id: uuid.UUID
    owner_id: uuid.UUID
    name: str
    size_bytes: int
    mime_type: str
    description: str | None
    duration_ms: int | None
    storage_id: str
    transcription_status: str
    transcription_text: str | None
    error_message: str | None
    transcribed_at: datetime | None
    created_at: datetime | None = None

    class Config:
        from_attributes = True

class TranscriptionOut(BaseModel):
    """Read model polled by the presentation layer."""
    media_id: uuid.UUID
    status: str
    text: str | None = None
    error: str | None = None
    transcribed_at: datetime | None = None

class TranscribeRequest(BaseModel):
    force: bool = False
