# =========================================================
# FILE: /apiforge/schemas/generate.py
# =========================================================

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, field_validator

from apiforge.core.enums import CommandType


class PromptRequest(BaseModel):
    prompt: str
    # normally classified from the prompt; clients may force it
    command_type: Optional[CommandType] = None

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, value: str):
        if not value or not value.strip():
            raise ValueError("Prompt cannot be empty")
        return value.strip()


class JobResponse(BaseModel):
    id: str
    project_id: str
    prompt: str
    command_type: str
    stage: str
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    deadline: Optional[str] = None
    error: Optional[str] = None
    error_file: Optional[str] = None
    error_line: Optional[int] = None
    answer: Optional[str] = None
    attempts: int = 0
    version_id: Optional[str] = None


class ProgressHint(BaseModel):
    percent: int
    label: str
    files_total: int = 0
    files_complete: int = 0
    current_file: Optional[str] = None


class StatusResponse(BaseModel):
    project_id: str
    project_status: str
    stage: str
    job: Optional[JobResponse] = None
    progress: ProgressHint


class EventsResponse(BaseModel):
    events: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[int] = None
    stage: str
