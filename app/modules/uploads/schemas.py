import uuid
from datetime import datetime
from pydantic import BaseModel, Field

class UploadInit(BaseModel):
    num_chunks: int

class UploadInitOut(BaseModel):
    upload_id: str
    num_chunks: int

class UploadStatusOut(BaseModel):
    upload_id: str
    num_chunks: int
    stored_chunks: int
    is_complete: bool
    storage_id: str | None
    completed_at: datetime | None

    class Config:
        from_attributes = True

class ChunkSlotOut(BaseModel):
    chunk_id: uuid.UUID
    chunk_index: int
    destination: dict

class ChunkStored(BaseModel):
    storage_id: str = Field(..., min_length=1, max_length=255)

class UploadComplete(BaseModel):
    content_type: str = Field(default="application/octet-stream", max_length=128)
    first_chunk_storage_id: str | None = None

class UploadCompleteOut(BaseModel):
    upload_id: str
    storage_id: str
