import uuid
from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Text, JSON, TIMESTAMP, UniqueConstraint, Index, text
from app.core.base import Base, TimestampedMixin

# run status values
QUEUED = "queued"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"  # another run held the media record

FINISHED = (COMPLETED, FAILED, SKIPPED)

class TranscriptionRun(Base, TimestampedMixin):
    """One execution of the orchestrator for a media record, queued by a trigger event."""
    __table_args__ = (Index("ix_transcriptionrun_status", "status", "created_at"),)

    media_id: Mapped[uuid.UUID] = mapped_column()
    event_name: Mapped[str] = mapped_column(String(64))
    payload: Mapped[dict] = mapped_column(JSON)

    status: Mapped[str] = mapped_column(String(16), default=QUEUED)  # queued | running | completed | failed | skipped
    attempts: Mapped[int] = mapped_column(Integer, default=0)  # times the run was claimed
    queued_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), server_default=text("CURRENT_TIMESTAMP"))
    started_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

class StepCheckpoint(Base, TimestampedMixin):
    """Memoized output of a completed step; replayed when a run is re-entered."""
    __table_args__ = (UniqueConstraint("run_id", "step_name", name="uq_stepcheckpoint_run_step"),)

    run_id: Mapped[uuid.UUID] = mapped_column()
    step_name: Mapped[str] = mapped_column(String(64))
    output: Mapped[dict] = mapped_column(JSON)
    attempts: Mapped[int] = mapped_column(Integer, default=1)
