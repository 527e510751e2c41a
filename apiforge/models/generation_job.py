# /apiforge/models/generation_job.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, Index, Integer, String, Text, ForeignKey, text

from apiforge.core.database import Base
from apiforge.core.enums import CommandType, JobStage
from apiforge.models.types import LongText, Timestamp, utcnow

_ACTIVE_STAGES = "stage IN ('initializing', 'generating', 'validating')"


class GenerationJob(Base):
    """One prompt -> files pipeline execution."""
    __tablename__ = "generation_jobs"
    __table_args__ = (
        # at most one non-terminal job per project (mysql has no partial indexes,
        # there the orchestrator lock + read check carry the guarantee alone)
        Index(
            "uq_generation_jobs_active_project",
            "project_id",
            unique=True,
            sqlite_where=text(_ACTIVE_STAGES),
            postgresql_where=text(_ACTIVE_STAGES),
        ).ddl_if(dialect=("sqlite", "postgresql")),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    prompt: Mapped[str] = mapped_column(LongText)

    # CREATE | MODIFY | CREATE_AND_LINK | FIX_ERROR | QUESTION
    command_type: Mapped[str] = mapped_column(String(20), default=CommandType.CREATE.value)

    # idle | initializing | generating | validating | complete | error
    stage: Mapped[str] = mapped_column(String(20), default=JobStage.INITIALIZING.value, index=True)

    started_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow)
    ended_at: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)
    deadline: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)

    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_file: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    error_line: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # QUESTION jobs answer in text instead of files
    answer: Mapped[Optional[str]] = mapped_column(LongText, nullable=True)

    # memoized step outputs: {"steps": {"initializing": {...}, "generating": {...}}}
    checkpoint: Mapped[dict] = mapped_column(JSON, default=dict)
    attempts: Mapped[int] = mapped_column(Integer, default=0)

    version_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow)

    @property
    def is_terminal(self) -> bool:
        return JobStage(self.stage).is_terminal
