# /apiforge/models/job_event.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, Float, Integer, String, Text, ForeignKey, UniqueConstraint

from apiforge.core.database import Base
from apiforge.models.types import Timestamp, utcnow


class JobEvent(Base):
    """Progress events for a generation job, ordered by seq."""
    __tablename__ = "job_events"
    __table_args__ = (UniqueConstraint("job_id", "seq", name="uq_job_events_seq"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("generation_jobs.id", ondelete="CASCADE"), index=True)
    seq: Mapped[int] = mapped_column(Integer)

    # Event type: stage, file, retry, error, complete
    event_type: Mapped[str] = mapped_column(String(20))

    # Stage at emit time: initializing, generating, validating, complete, error
    stage: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # File status: analyzing, reading, writing, complete
    file_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # context-retrieval relevance, 0..1
    relevance: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow)
