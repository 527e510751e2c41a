# /apiforge/models/version.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import JSON, Integer, String, Text, ForeignKey, UniqueConstraint

from apiforge.core.database import Base
from apiforge.core.enums import VersionStatus
from apiforge.models.types import Timestamp, utcnow

class Version(Base):
    """Immutable numbered snapshot of a project's file tree."""
    __tablename__ = "versions"
    __table_args__ = (UniqueConstraint("project_id", "version_number", name="uq_versions_number"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    version_number: Mapped[int] = mapped_column(Integer)

    name: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    command_type: Mapped[str] = mapped_column(String(20))

    # path -> content
    files: Mapped[dict] = mapped_column(JSON, default=dict)

    # generating | completed | failed
    status: Mapped[str] = mapped_column(String(20), default=VersionStatus.COMPLETED.value)

    parent_version_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    job_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow)
