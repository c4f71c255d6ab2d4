import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, BigInteger, Text, TIMESTAMP, Index
from app.core.base import Base, TimestampedMixin

# transcription_status values
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
ERROR = "error"

TRANSCRIPTION_STATUSES = (PENDING, PROCESSING, COMPLETED, ERROR)

class MediaRecord(Base, TimestampedMixin):
    __table_args__ = (Index("ix_mediarecord_owner_id", "owner_id"),)

    owner_id: Mapped[uuid.UUID] = mapped_column()
    name: Mapped[str] = mapped_column(String(512))
    size_bytes: Mapped[int] = mapped_column(BigInteger)
    mime_type: Mapped[str] = mapped_column(String(128))
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)  # for audio/video if known
    # The storage id of the (possibly assembled) file in the object store.
    storage_id: Mapped[str] = mapped_column(String(255))

    transcription_status: Mapped[str] = mapped_column(String(16), default=PENDING)  # pending | processing | completed | error
    transcription_text: Mapped[str | None] = mapped_column(Text, nullable=True)  # set iff completed
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)  # set iff error
    transcribed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    # run currently holding the processing lock
    transcription_run_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
