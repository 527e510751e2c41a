# /apiforge/models/sandbox.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Boolean, Integer, String, Text, ForeignKey

from apiforge.core.database import Base
from apiforge.core.enums import SandboxState
from apiforge.models.types import Timestamp, utcnow

class Sandbox(Base):
    """Local cache of provider state for a project's preview environment."""
    __tablename__ = "sandboxes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    project_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("projects.id", ondelete="CASCADE"), unique=True, index=True
    )
    provider_sandbox_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # absent | provisioning | alive | stale | restoring | failed
    state: Mapped[str] = mapped_column(String(20), default=SandboxState.ABSENT.value)
    alive: Mapped[bool] = mapped_column(Boolean, default=False)

    last_keepalive_at: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)
    last_restored_at: Mapped[Optional[datetime]] = mapped_column(Timestamp, nullable=True)
    restore_count: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, onupdate=utcnow)
