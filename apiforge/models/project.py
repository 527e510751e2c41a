# /apiforge/models/project.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, ForeignKey

from apiforge.core.database import Base
from apiforge.core.enums import Framework, ProjectStatus
from apiforge.models.types import LongText, Timestamp, utcnow

class Project(Base):
    __tablename__ = "projects"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)

    name: Mapped[str] = mapped_column(String(200))
    description: Mapped[str] = mapped_column(Text, default="")

    # first prompt; follow-up prompts live on generation_jobs
    prompt: Mapped[str] = mapped_column(LongText)

    # fastapi | flask | express | nextjs | react | vue | angular
    framework: Mapped[str] = mapped_column(String(20), default=Framework.FASTAPI.value)

    # generating | completed | failed | deployed
    status: Mapped[str] = mapped_column(String(20), default=ProjectStatus.GENERATING.value)

    # repository binding (nullable)
    repo_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, onupdate=utcnow)
