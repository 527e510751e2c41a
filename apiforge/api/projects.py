# =========================================================
# FILE: apiforge/api/projects.py
# =========================================================

import io
import re
import zipfile
import logging
from typing import List
from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.api.deps import get_current_user, get_orchestrator, get_owned_project, get_sandboxes
from apiforge.core.database import get_db
from apiforge.models.project import Project
from apiforge.models.project_file import ProjectFile
from apiforge.models.version import Version
from apiforge.schemas.projects import (
    ProjectCreateRequest,
    ProjectCreateResponse,
    ProjectFileItem,
    ProjectFilesResponse,
    ProjectResponse,
    RepositoryBindRequest,
    SnapshotExportResponse,
)
from apiforge.services.modification_ledger import count_pending
from apiforge.services.orchestrator import ProjectOrchestrator
from apiforge.services.sandbox_manager import SandboxManager
from apiforge.services.version_store import export_snapshot, get_latest

router = APIRouter(prefix="/api", tags=["projects"])
logger = logging.getLogger("apiforge.projects")


def _iso(dt):
    return dt.replace(tzinfo=timezone.utc).isoformat() if dt else None


async def _count_files(db: AsyncSession, project_id: str) -> int:
    n = (
        await db.execute(
            select(func.count(ProjectFile.id))
            .where(ProjectFile.project_id == project_id)
        )
    ).scalar_one()
    return int(n or 0)


async def _project_response(db: AsyncSession, p: Project) -> ProjectResponse:
    latest = await get_latest(db, p.id)
    return ProjectResponse(
        id=p.id,
        user_id=p.user_id,
        name=p.name,
        description=p.description or "",
        prompt=p.prompt,
        framework=p.framework,
        status=p.status,
        repo_url=p.repo_url,
        created_at=_iso(p.created_at),
        updated_at=_iso(p.updated_at),
        file_count=await _count_files(db, p.id),
        latest_version_number=latest.version_number if latest else None,
        pending_modifications=await count_pending(db, p.id),
    )


@router.post("/projects", response_model=ProjectCreateResponse, status_code=201)
async def create_project(
        data: ProjectCreateRequest,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
        orchestrator: ProjectOrchestrator = Depends(get_orchestrator),
):
    """Create a project and start its first generation."""
    project = await orchestrator.create_project(
        user_id=user["id"],
        prompt=data.prompt,
        name=data.name,
        framework=data.framework,
        description=data.description,
    )
    job = await orchestrator.submit_prompt(project.id, data.prompt)

    fresh = await db.get(Project, project.id)
    return ProjectCreateResponse(
        project=await _project_response(db, fresh),
        job_id=job.id,
        stage=job.stage,
    )


@router.get("/projects", response_model=List[ProjectResponse])
async def projects(
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    rows = (
        await db.execute(
            select(Project)
            .where(Project.user_id == user["id"])
            .order_by(Project.created_at.desc())
        )
    ).scalars().all()

    return [await _project_response(db, p) for p in rows]


@router.get("/projects/{pid}", response_model=ProjectResponse)
async def project(
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    return await _project_response(db, p)


@router.delete("/projects/{pid}")
async def delete_project(
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    has_versions = (
        await db.execute(select(Version.id).where(Version.project_id == p.id).limit(1))
    ).first() is not None
    if has_versions:
        raise HTTPException(status_code=409, detail="Project has versions and cannot be deleted")

    await sandboxes.destroy(p.id)
    await db.execute(delete(Project).where(Project.id == p.id))
    await db.commit()
    logger.info("Project %s deleted", p.id)
    return {"ok": True}


@router.get("/projects/{pid}/files", response_model=ProjectFilesResponse)
async def project_files(
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    files = (
        await db.execute(
            select(ProjectFile)
            .where(ProjectFile.project_id == p.id)
            .order_by(ProjectFile.path.asc())
        )
    ).scalars().all()

    return ProjectFilesResponse(
        project_id=p.id,
        files=[
            ProjectFileItem(path=f.path, language=f.language or "text", content=f.content)
            for f in files
        ],
    )


@router.get("/projects/{pid}/export", response_model=SnapshotExportResponse)
async def export_project(
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    """Flat path -> content map, for pushing to a version-control remote."""
    latest = await get_latest(db, p.id)
    return SnapshotExportResponse(
        project_id=p.id,
        version_number=latest.version_number if latest else None,
        files=await export_snapshot(db, p.id),
    )


@router.get("/projects/{pid}/download")
async def download_project(
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    files = await export_snapshot(db, p.id)
    if not files:
        raise HTTPException(status_code=404, detail="Project has no files yet")

    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        for path, content in files.items():
            zf.writestr(path, content or "")
    buf.seek(0)

    safe_name = re.sub(r"[^A-Za-z0-9_-]+", "-", p.name or "project").strip("-")[:60] or "project"
    return StreamingResponse(
        buf,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{safe_name}.zip"'},
    )


@router.put("/projects/{pid}/repository", response_model=ProjectResponse)
async def bind_repository(
        data: RepositoryBindRequest,
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    p.repo_url = data.repo_url
    await db.commit()
    logger.info("Project %s bound to %s", p.id, data.repo_url or "<none>")
    return await _project_response(db, p)
