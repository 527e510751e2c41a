# FILE: apiforge/services/orchestrator.py
"""
Project orchestrator: the entry point the API layer calls.

- one non-terminal GenerationJob per project (lock + read check + partial unique index)
- hands jobs to the engine as asyncio tasks and returns immediately
- records terminal outcomes on the project and refreshes its sandbox
"""

import asyncio
import logging
import uuid
import weakref
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from apiforge.core.database import SessionLocal
from apiforge.core.enums import (
    NON_TERMINAL_STAGES,
    CommandType,
    Framework,
    JobStage,
    ProjectStatus,
)
from apiforge.core.errors import (
    JobAlreadyInFlight,
    NotFoundError,
    SandboxProvisionError,
)
from apiforge.models.generation_job import GenerationJob
from apiforge.models.project import Project
from apiforge.models.types import utcnow
from apiforge.models.version import Version
from apiforge.services.command_classifier import classify_command
from apiforge.services.event_service import append_event, next_seq
from apiforge.services.job_engine import TIMEOUT_MESSAGE, JobEngine
from apiforge.services.progress import progress_hint
from apiforge.services.sandbox_manager import SandboxManager

logger = logging.getLogger("apiforge.orchestrator")

_NON_TERMINAL = [s.value for s in NON_TERMINAL_STAGES]


def _default_name(name: Optional[str], prompt: str) -> str:
    if name and name.strip():
        return name.strip()[:200]
    first = prompt.strip().splitlines()[0] if prompt.strip() else ""
    return (first or "Untitled API")[:200]


def job_to_dict(job: GenerationJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "project_id": job.project_id,
        "prompt": job.prompt,
        "command_type": job.command_type,
        "stage": job.stage,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "ended_at": job.ended_at.isoformat() if job.ended_at else None,
        "deadline": job.deadline.isoformat() if job.deadline else None,
        "error": job.error,
        "error_file": job.error_file,
        "error_line": job.error_line,
        "answer": job.answer,
        "attempts": job.attempts or 0,
        "version_id": job.version_id,
    }


class ProjectOrchestrator:
    def __init__(
        self,
        engine: JobEngine,
        sandboxes: SandboxManager,
        session_factory=SessionLocal,
    ):
        self.engine = engine
        self.sandboxes = sandboxes
        self._session_factory = session_factory
        # entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._tasks: Dict[str, asyncio.Task] = {}

    def _lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    # ----------------------------
    # projects
    # ----------------------------
    async def create_project(
        self,
        user_id: str,
        prompt: str,
        name: Optional[str] = None,
        framework: Framework = Framework.FASTAPI,
        description: str = "",
    ) -> Project:
        async with self._session_factory() as db:
            project = Project(
                id=str(uuid.uuid4()),
                user_id=user_id,
                name=_default_name(name, prompt),
                description=description,
                prompt=prompt,
                framework=Framework(framework).value,
                status=ProjectStatus.GENERATING.value,
            )
            db.add(project)
            await db.commit()
            logger.info("Project %s created (%s)", project.id, project.framework)
            return project

    # ----------------------------
    # jobs
    # ----------------------------
    async def _active_job(self, db, project_id: str) -> Optional[GenerationJob]:
        return (
            await db.execute(
                select(GenerationJob)
                .where(GenerationJob.project_id == project_id, GenerationJob.stage.in_(_NON_TERMINAL))
                .limit(1)
            )
        ).scalar_one_or_none()

    async def submit_prompt(
        self,
        project_id: str,
        prompt: str,
        command_type: Optional[CommandType] = None,
    ) -> GenerationJob:
        """Create a job in `initializing`, start it in the background, return it immediately."""
        await self.sweep_stuck_jobs(project_id)

        async with self._lock(project_id):
            async with self._session_factory() as db:
                project = await db.get(Project, project_id)
                if project is None:
                    raise NotFoundError("Project not found")

                active = await self._active_job(db, project_id)
                if active is not None:
                    raise JobAlreadyInFlight(project_id, active.id)

                has_versions = (
                    await db.execute(select(Version.id).where(Version.project_id == project_id).limit(1))
                ).first() is not None
                if command_type is None:
                    command_type = classify_command(prompt, has_versions, bool(project.repo_url)).command_type
                elif not has_versions and command_type != CommandType.QUESTION:
                    command_type = CommandType.CREATE

                started = utcnow()
                job = GenerationJob(
                    id=str(uuid.uuid4()),
                    project_id=project_id,
                    prompt=prompt,
                    command_type=CommandType(command_type).value,
                    stage=JobStage.INITIALIZING.value,
                    started_at=started,
                    deadline=self.engine.deadline_for(started),
                    checkpoint={},
                )
                db.add(job)
                project.status = ProjectStatus.GENERATING.value
                try:
                    await db.commit()
                except IntegrityError:
                    # another process won the race for this project
                    await db.rollback()
                    raise JobAlreadyInFlight(project_id)

        logger.info("Job %s submitted for project %s (%s)", job.id, project_id, job.command_type)
        self._spawn(job.id)
        return job

    def _spawn(self, job_id: str) -> None:
        task = asyncio.create_task(self._drive(job_id))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))

    async def _drive(self, job_id: str) -> None:
        try:
            job = await self.engine.run(job_id)
            await self._on_terminal(job)
        except Exception:
            logger.exception("Background driver for job %s failed", job_id)

    async def _on_terminal(self, job: GenerationJob) -> None:
        stage = JobStage(job.stage)
        if not stage.is_terminal:
            return

        async with self._session_factory() as db:
            project = await db.get(Project, job.project_id)
            if project is None:
                return
            if stage == JobStage.ERROR:
                project.status = ProjectStatus.FAILED.value
            elif project.status != ProjectStatus.DEPLOYED.value:
                project.status = ProjectStatus.COMPLETED.value
            await db.commit()

        if stage == JobStage.COMPLETE:
            async def _report_url(url: str) -> None:
                await self._record_sandbox_url(job, url)

            try:
                await self.sandboxes.refresh(job.project_id, on_restored=_report_url)
            except SandboxProvisionError as e:
                # generation itself succeeded; the sandbox record carries the failure
                logger.warning("Sandbox refresh after job %s failed: %s", job.id, e.message)

    async def _record_sandbox_url(self, job: GenerationJob, url: str) -> None:
        """The refresh had to rebuild the sandbox: tell clients following this job where it lives now."""
        logger.info("Sandbox for project %s moved to %s after job %s", job.project_id, url, job.id)
        async with self._session_factory() as db:
            append_event(
                db, job.id, await next_seq(db, job.id), "sandbox",
                stage=JobStage.COMPLETE.value,
                message="Preview restarted",
                payload={"url": url},
            )
            await db.commit()

    async def wait_for_job(self, job_id: str) -> None:
        """Await the background task for ``job_id`` if this process runs it."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    # ----------------------------
    # reads
    # ----------------------------
    async def get_job(self, job_id: str) -> GenerationJob:
        async with self._session_factory() as db:
            job = await db.get(GenerationJob, job_id)
            if job is None:
                raise NotFoundError("Job not found")
            return job

    async def latest_job(self, project_id: str) -> Optional[GenerationJob]:
        async with self._session_factory() as db:
            return (
                await db.execute(
                    select(GenerationJob)
                    .where(GenerationJob.project_id == project_id)
                    .order_by(GenerationJob.started_at.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()

    async def get_status(self, project_id: str) -> Dict[str, Any]:
        """Stage + progress hint for the project's most recent job. Read only."""
        async with self._session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise NotFoundError("Project not found")
            project_status = project.status

        job = await self.latest_job(project_id)
        if job is None:
            return {
                "project_id": project_id,
                "project_status": project_status,
                "stage": JobStage.IDLE.value,
                "job": None,
                "progress": progress_hint(JobStage.IDLE),
            }

        stage = JobStage(job.stage)
        return {
            "project_id": project_id,
            "project_status": project_status,
            "stage": stage.value,
            "job": job_to_dict(job),
            "progress": progress_hint(stage, self.engine.file_flags(job.id)),
        }

    # ----------------------------
    # recovery
    # ----------------------------
    async def sweep_stuck_jobs(self, project_id: Optional[str] = None) -> List[str]:
        """Force every non-terminal job past its deadline to `error`."""
        now = utcnow()
        async with self._session_factory() as db:
            q = select(GenerationJob.id, GenerationJob.project_id).where(
                GenerationJob.stage.in_(_NON_TERMINAL),
                GenerationJob.deadline < now,
            )
            if project_id:
                q = q.where(GenerationJob.project_id == project_id)
            candidates = (await db.execute(q)).all()

        swept: List[str] = []
        for job_id, job_project_id in candidates:
            async with self._session_factory() as db:
                # a version fold may complete the job between the read and this write
                result = await db.execute(
                    update(GenerationJob)
                    .where(GenerationJob.id == job_id, GenerationJob.stage.in_(_NON_TERMINAL))
                    .values(stage=JobStage.ERROR.value, error=TIMEOUT_MESSAGE, ended_at=now)
                )
                if not result.rowcount:
                    continue
                project = await db.get(Project, job_project_id)
                if project is not None:
                    project.status = ProjectStatus.FAILED.value
                await db.commit()
            logger.warning("Job %s (project %s) forced to error after deadline", job_id, job_project_id)
            swept.append(job_id)
        return swept

    async def resume_incomplete_jobs(self) -> List[str]:
        """Startup: time out expired jobs, pick the rest up from their checkpoints."""
        await self.sweep_stuck_jobs()
        async with self._session_factory() as db:
            rows = (
                await db.execute(select(GenerationJob.id).where(GenerationJob.stage.in_(_NON_TERMINAL)))
            ).scalars().all()

        for job_id in rows:
            logger.info("Resuming job %s from checkpoint", job_id)
            self._spawn(job_id)
        return list(rows)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
