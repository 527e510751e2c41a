# FILE: apiforge/api/generate.py
# =========================================================
# Prompt submission, job status and progress events
# =========================================================

import time
import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.api.deps import get_current_user, get_orchestrator, get_owned_project
from apiforge.core.database import SessionLocal, get_db
from apiforge.core.enums import JobStage
from apiforge.models.generation_job import GenerationJob
from apiforge.models.project import Project
from apiforge.schemas.generate import EventsResponse, JobResponse, PromptRequest, StatusResponse
from apiforge.services.event_service import list_events
from apiforge.services.orchestrator import ProjectOrchestrator, job_to_dict

router = APIRouter(prefix="/api", tags=["generate"])

EVENTS_MAX_WAIT_MS = 30000
EVENTS_POLL_SECONDS = 0.25


async def _owned_job(db: AsyncSession, job_id: str, user_id: str) -> GenerationJob:
    job = (
        await db.execute(
            select(GenerationJob)
            .join(Project, Project.id == GenerationJob.project_id)
            .where(GenerationJob.id == job_id, Project.user_id == user_id)
        )
    ).scalar_one_or_none()
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/projects/{pid}/prompts", response_model=JobResponse, status_code=202)
async def submit_prompt(
        data: PromptRequest,
        p: Project = Depends(get_owned_project),
        orchestrator: ProjectOrchestrator = Depends(get_orchestrator),
):
    """Start a generation for a follow-up prompt. 409 while another one is running."""
    job = await orchestrator.submit_prompt(p.id, data.prompt, command_type=data.command_type)
    return JobResponse(**job_to_dict(job))


@router.get("/projects/{pid}/status", response_model=StatusResponse)
async def project_status(
        p: Project = Depends(get_owned_project),
        orchestrator: ProjectOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.sweep_stuck_jobs(p.id)
    return StatusResponse(**await orchestrator.get_status(p.id))


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def job_status(
        job_id: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    job = await _owned_job(db, job_id, user["id"])
    return JobResponse(**job_to_dict(job))


@router.get("/jobs/{job_id}/events", response_model=EventsResponse)
async def job_events(
        job_id: str,
        after: Optional[int] = None,
        wait_ms: Optional[int] = None,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    """Long-poll: returns as soon as events past ``after`` exist, or after ``wait_ms``."""
    await _owned_job(db, job_id, user["id"])

    wait_ms = max(0, min(int(wait_ms or 0), EVENTS_MAX_WAIT_MS))
    deadline = time.time() + (wait_ms / 1000.0 if wait_ms else 0)

    while True:
        # fresh session per poll so committed events from the engine are visible
        async with SessionLocal() as poll_db:
            events, cursor = await list_events(poll_db, job_id, after)
            job = await poll_db.get(GenerationJob, job_id)
            stage = job.stage if job else JobStage.ERROR.value
        if events or wait_ms <= 0 or time.time() >= deadline or JobStage(stage).is_terminal:
            return EventsResponse(events=events, next_cursor=cursor, stage=stage)
        await asyncio.sleep(EVENTS_POLL_SECONDS)
