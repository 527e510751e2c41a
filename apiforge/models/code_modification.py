# /apiforge/models/code_modification.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, Text, ForeignKey

from apiforge.core.database import Base
from apiforge.core.enums import ModificationStatus
from apiforge.models.types import LongText, Timestamp, utcnow

class CodeModification(Base):
    """A reviewable single-file edit. Never deleted; reject is a terminal state."""
    __tablename__ = "code_modifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), index=True)

    # generation job that proposed it
    message_id: Mapped[str] = mapped_column(String(36), index=True)

    file_path: Mapped[str] = mapped_column(String(500))
    old_content: Mapped[Optional[str]] = mapped_column(LongText, nullable=True)  # null -> file creation
    new_content: Mapped[Optional[str]] = mapped_column(LongText, nullable=True)  # null -> delete
    line_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    line_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # edit | create | delete
    modification_type: Mapped[str] = mapped_column(String(10))
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # pending | applied | rejected | conflict
    status: Mapped[str] = mapped_column(String(10), default=ModificationStatus.PENDING.value, index=True)
    base_version_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, onupdate=utcnow)
    applied_at: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)

    @property
    def applied(self) -> bool:
        return self.status == ModificationStatus.APPLIED.value
