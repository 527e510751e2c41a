from typing import List, Optional
from pydantic import BaseModel, Field


class ModificationResponse(BaseModel):
    id: str
    project_id: str
    message_id: str
    file_path: str
    old_content: Optional[str] = None
    new_content: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    modification_type: str
    reason: Optional[str] = None
    status: str
    applied: bool
    base_version_number: Optional[int] = None
    created_at: Optional[str] = None
    applied_at: Optional[str] = None


class ApplyMultipleRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)


class ApplyOutcomeResponse(BaseModel):
    id: str
    outcome: str  # applied | already_applied | rejected | already_rejected | conflict | not_found | error
    ok: bool
    file_path: Optional[str] = None
    message: Optional[str] = None


class ApplyMultipleResponse(BaseModel):
    results: List[ApplyOutcomeResponse]
    applied: int
    failed: int
