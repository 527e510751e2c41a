from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from apiforge.core.enums import Framework


class ProjectCreateRequest(BaseModel):
    prompt: str
    name: Optional[str] = None
    description: str = ""
    framework: Framework = Framework.FASTAPI

    @field_validator("framework", mode="before")
    @classmethod
    def validate_framework(cls, v):
        return (v or Framework.FASTAPI.value).lower().strip() if isinstance(v, str) else v

    @field_validator("prompt")
    @classmethod
    def validate_prompt(cls, v: str):
        if not v or not v.strip():
            raise ValueError("Prompt cannot be empty")
        return v.strip()


class ProjectResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    user_id: str
    name: str
    description: str
    prompt: str
    framework: str
    status: str
    repo_url: Optional[str] = None
    created_at: str
    updated_at: Optional[str] = None
    file_count: int = 0
    latest_version_number: Optional[int] = None
    pending_modifications: int = 0


class ProjectCreateResponse(BaseModel):
    project: ProjectResponse
    job_id: str
    stage: str


class ProjectFileItem(BaseModel):
    path: str
    language: str
    content: str


class ProjectFilesResponse(BaseModel):
    project_id: str
    files: List[ProjectFileItem] = Field(default_factory=list)


class SnapshotExportResponse(BaseModel):
    project_id: str
    version_number: Optional[int] = None
    files: Dict[str, str] = Field(default_factory=dict)


class RepositoryBindRequest(BaseModel):
    repo_url: Optional[str] = None

    @field_validator("repo_url")
    @classmethod
    def validate_repo_url(cls, v: Optional[str]):
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not (v.startswith("https://") or v.startswith("git@")):
            raise ValueError("repo_url must be an https:// or git@ remote")
        return v
