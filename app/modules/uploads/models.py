import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, ForeignKey, TIMESTAMP, UniqueConstraint, Index
from app.core.base import Base, TimestampedMixin

class MultipartUpload(Base, TimestampedMixin):
    __table_args__ = (Index("ix_multipartupload_storage_id", "storage_id"),)

    # opaque, caller-unguessable handle given to clients
    upload_id: Mapped[str] = mapped_column(String(64), unique=True)
    num_chunks: Mapped[int] = mapped_column(Integer)  # fixed at creation
    stored_chunks: Mapped[int] = mapped_column(Integer, default=0)
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # assembled object, set together with is_complete
    storage_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

class MultipartChunk(Base, TimestampedMixin):
    __table_args__ = (UniqueConstraint("upload_pk", "chunk_index", name="uq_multipartchunk_upload_index"),)

    upload_pk: Mapped[uuid.UUID] = mapped_column(ForeignKey("multipartupload.id"))
    chunk_index: Mapped[int] = mapped_column(Integer)
    storage_id: Mapped[str | None] = mapped_column(String(255), nullable=True)  # null until the bytes land
    uploaded_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
