# FILE: apiforge/services/job_engine.py
# =========================================================
# Generation job engine
# =========================================================

"""
idle -> initializing -> generating -> validating -> complete, with error
reachable from every non-terminal stage.

Each stage is a step whose output is memoized in GenerationJob.checkpoint, so
a job picked up again after a crash skips finished steps instead of starting
over. Sessions are short-lived: no transaction stays open across a provider
call or an event write.
"""

import asyncio
import difflib
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update

from apiforge.core.config import JOB_TIMEOUT_SECONDS
from apiforge.core.database import SessionLocal
from apiforge.core.enums import (
    NON_TERMINAL_STAGES,
    CommandType,
    FileStatus,
    Framework,
    JobStage,
    ModificationType,
    exhaustive,
)
from apiforge.core.errors import ApiForgeError, GenerationValidationError, NotFoundError
from apiforge.core.retry import GENERATION_RETRY, RetryPolicy, retry_async
from apiforge.models.generation_job import GenerationJob
from apiforge.models.project import Project
from apiforge.models.types import utcnow
from apiforge.services.completion_service import CompletionProvider
from apiforge.services.event_service import append_event, next_seq
from apiforge.services.modification_ledger import ProposedModification, propose
from apiforge.services.prompt_service import build_generation_context
from apiforge.services.version_store import append_version, get_latest
from apiforge.services.workspace_service import load_tree, normalize_path
from apiforge.validators.project_validator import first_error, validate_project

logger = logging.getLogger("apiforge.jobs")

ALLOWED_TRANSITIONS = exhaustive(JobStage, {
    JobStage.IDLE: {JobStage.INITIALIZING, JobStage.ERROR},
    JobStage.INITIALIZING: {JobStage.GENERATING, JobStage.ERROR},
    JobStage.GENERATING: {JobStage.VALIDATING, JobStage.ERROR},
    JobStage.VALIDATING: {JobStage.COMPLETE, JobStage.ERROR},
    JobStage.COMPLETE: set(),
    JobStage.ERROR: set(),
})

STAGE_ORDER = (
    JobStage.IDLE,
    JobStage.INITIALIZING,
    JobStage.GENERATING,
    JobStage.VALIDATING,
    JobStage.COMPLETE,
)

TIMEOUT_MESSAGE = "Generation timed out."

_NON_TERMINAL = [s.value for s in NON_TERMINAL_STAGES]


@dataclass
class GeneratedFile:
    filename: str
    content: str = ""
    is_complete: bool = False
    action: str = "write"  # write | delete


class InvalidTransition(ApiForgeError):
    code = "INVALID_TRANSITION"
    status_code = 409


class JobSuperseded(ApiForgeError):
    """The job reached a terminal stage elsewhere (deadline sweep) before it could finish."""
    code = "JOB_SUPERSEDED"
    status_code = 409


def _line_range(old: str, new: str) -> Tuple[Optional[int], Optional[int]]:
    """1-based line span of the changed region in ``new``."""
    sm = difflib.SequenceMatcher(a=old.splitlines(), b=new.splitlines(), autojunk=False)
    changed = [op for op in sm.get_opcodes() if op[0] != "equal"]
    if not changed:
        return None, None
    start = changed[0][3] + 1
    end = max(changed[-1][4], start)
    return start, end


class JobEngine:
    def __init__(
        self,
        provider: CompletionProvider,
        session_factory=SessionLocal,
        retry_policy: RetryPolicy = GENERATION_RETRY,
        timeout_seconds: int = JOB_TIMEOUT_SECONDS,
    ):
        self.provider = provider
        self._session_factory = session_factory
        self._retry_policy = retry_policy
        self.timeout_seconds = timeout_seconds
        # in-flight files per job, read by the progress projection
        self._live: Dict[str, Dict[str, GeneratedFile]] = {}
        self._seq: Dict[str, int] = {}
        # version folds run shielded from the deadline; run() waits for them
        self._folds: Dict[str, asyncio.Future] = {}

        self._completers = exhaustive(CommandType, {
            CommandType.CREATE: self._complete_create,
            CommandType.MODIFY: self._complete_incremental,
            CommandType.CREATE_AND_LINK: self._complete_incremental,
            CommandType.FIX_ERROR: self._complete_incremental,
            CommandType.QUESTION: self._complete_question,
        })

    def deadline_for(self, started_at) -> Any:
        return started_at + timedelta(seconds=self.timeout_seconds)

    def file_flags(self, job_id: str) -> Dict[str, bool]:
        return {p: f.is_complete for p, f in (self._live.get(job_id) or {}).items()}

    # ----------------------------
    # persistence helpers
    # ----------------------------
    async def _load(self, job_id: str) -> GenerationJob:
        async with self._session_factory() as db:
            job = await db.get(GenerationJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            return job

    async def _emit(self, job_id: str, event_type: str, **fields: Any) -> None:
        async with self._session_factory() as db:
            if job_id not in self._seq:
                self._seq[job_id] = await next_seq(db, job_id)
            seq = self._seq[job_id]
            self._seq[job_id] = seq + 1
            append_event(db, job_id, seq, event_type, **fields)
            await db.commit()

    async def _advance(self, job_id: str, stage: JobStage, message: Optional[str] = None) -> None:
        async with self._session_factory() as db:
            job = await db.get(GenerationJob, job_id)
            current = JobStage(job.stage)
            if current in STAGE_ORDER and STAGE_ORDER.index(stage) <= STAGE_ORDER.index(current):
                # resumed job, already past this stage
                return
            if stage not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransition(f"Job {job_id}: {current.value} -> {stage.value} not allowed")
            job.stage = stage.value
            await db.commit()
        logger.info("Job %s -> %s", job_id, stage.value)
        await self._emit(job_id, "stage", stage=stage.value, message=message)

    async def _save_step(self, job_id: str, stage: JobStage, output: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            job = await db.get(GenerationJob, job_id)
            checkpoint = dict(job.checkpoint or {})
            steps = dict(checkpoint.get("steps") or {})
            steps[stage.value] = output
            checkpoint["steps"] = steps
            # reassign so the JSON column is flagged dirty
            job.checkpoint = checkpoint
            await db.commit()

    async def _fail(self, job_id: str, message: str, file: Optional[str] = None, line: Optional[int] = None) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id, GenerationJob.stage.in_(_NON_TERMINAL))
                .values(
                    stage=JobStage.ERROR.value,
                    error=message,
                    error_file=file,
                    error_line=line,
                    ended_at=utcnow(),
                )
            )
            await db.commit()
        if not result.rowcount:
            # already terminal
            return
        logger.info("Job %s -> error: %s", job_id, message)
        await self._emit(
            job_id, "error",
            stage=JobStage.ERROR.value,
            file_path=file,
            message=message,
            payload={"file": file, "line": line} if file else None,
        )

    # ----------------------------
    # run
    # ----------------------------
    async def run(self, job_id: str) -> GenerationJob:
        """Drive the job to a terminal stage. Never raises for job-level failures."""
        job = await self._load(job_id)
        if job.is_terminal:
            return job

        remaining = None
        if job.deadline is not None:
            remaining = (job.deadline - utcnow()).total_seconds()

        try:
            if remaining is not None and remaining <= 0:
                raise asyncio.TimeoutError()
            await asyncio.wait_for(self._run_steps(job_id), timeout=remaining)
        except asyncio.TimeoutError:
            await self._settle_fold(job_id)
            logger.warning("Job %s hit its deadline", job_id)
            await self._fail(job_id, TIMEOUT_MESSAGE)
        except GenerationValidationError as e:
            await self._fail(job_id, e.message, file=e.file, line=e.line)
        except ApiForgeError as e:
            logger.warning("Job %s failed: %s", job_id, e.message)
            await self._fail(job_id, e.message)
        except Exception as e:
            logger.exception("Job %s crashed", job_id)
            await self._fail(job_id, f"Generation failed: {e}")
        finally:
            self._live.pop(job_id, None)
            self._seq.pop(job_id, None)
            self._folds.pop(job_id, None)

        return await self._load(job_id)

    async def _settle_fold(self, job_id: str) -> None:
        """A fold that already started runs to its own end: complete with a version, or nothing."""
        fold = self._folds.get(job_id)
        if fold is None:
            return
        try:
            await fold
        except ApiForgeError as e:
            logger.info("Job %s: version fold abandoned: %s", job_id, e.message)
        except Exception:
            logger.exception("Job %s: version fold failed", job_id)

    async def _run_steps(self, job_id: str) -> None:
        job = await self._load(job_id)
        async with self._session_factory() as db:
            project = await db.get(Project, job.project_id)
            if project is None:
                raise NotFoundError("Project not found")
            framework = Framework(project.framework)
            repo_url = project.repo_url

        steps: Dict[str, Any] = dict((job.checkpoint or {}).get("steps") or {})
        command_type = CommandType(job.command_type)

        if JobStage(job.stage) == JobStage.IDLE:
            await self._advance(job_id, JobStage.INITIALIZING)

        init = steps.get(JobStage.INITIALIZING.value)
        if init is None:
            init = await self._step_initialize(job, command_type, framework, repo_url)
            await self._save_step(job_id, JobStage.INITIALIZING, init)
        else:
            logger.info("Job %s: reusing memoized initializing step", job_id)

        await self._advance(job_id, JobStage.GENERATING, "Generating files")
        gen = steps.get(JobStage.GENERATING.value)
        if gen is None:
            gen = await self._step_generate(job, init)
            await self._save_step(job_id, JobStage.GENERATING, gen)
        else:
            logger.info("Job %s: reusing memoized generating step", job_id)

        await self._advance(job_id, JobStage.VALIDATING, "Validating generated files")
        checked = steps.get(JobStage.VALIDATING.value)
        if checked is None:
            checked = self._step_validate(command_type, framework, gen)
            await self._save_step(job_id, JobStage.VALIDATING, checked)
            for w in checked["warnings"]:
                await self._emit(job_id, "warning", stage=JobStage.VALIDATING.value, file_path=w.get("file"),
                                 message=w.get("message"), payload=w)

        await self._completers[command_type](job, init, gen)

    # ----------------------------
    # steps
    # ----------------------------
    async def _step_initialize(
        self,
        job: GenerationJob,
        command_type: CommandType,
        framework: Framework,
        repo_url: Optional[str],
    ) -> Dict[str, Any]:
        async with self._session_factory() as db:
            latest = await get_latest(db, job.project_id)
            base_files = await load_tree(db, job.project_id) if command_type != CommandType.CREATE else {}

        context = build_generation_context(command_type, framework, base_files, repo_url)
        await self._emit(
            job.id, "plan",
            stage=JobStage.INITIALIZING.value,
            message=f"{command_type.value} on {framework.value} project",
            payload={"file_count": len(base_files), "base_version_number": latest.version_number if latest else None},
        )
        return {
            "context": context,
            "base_files": base_files,
            "base_version_number": latest.version_number if latest else None,
        }

    async def _record_attempt(self, job_id: str, attempt: int) -> None:
        async with self._session_factory() as db:
            await db.execute(update(GenerationJob).where(GenerationJob.id == job_id).values(attempts=attempt))
            await db.commit()

    async def _step_generate(self, job: GenerationJob, init: Dict[str, Any]) -> Dict[str, Any]:
        made = 0

        async def _attempt() -> Tuple[Dict[str, GeneratedFile], str]:
            nonlocal made
            made += 1
            await self._record_attempt(job.id, (job.attempts or 0) + made)

            files: Dict[str, GeneratedFile] = {}
            self._live[job.id] = files
            answer: List[str] = []

            async for chunk in self.provider.complete(job.prompt, init["context"]):
                if chunk.filename is None:
                    answer.append(chunk.chunk)
                    continue

                path = normalize_path(chunk.filename)
                gf = files.get(path)
                if gf is None:
                    gf = files[path] = GeneratedFile(filename=path, action=chunk.action)
                    await self._emit(
                        job.id, "file",
                        stage=JobStage.GENERATING.value,
                        file_path=path,
                        file_status=FileStatus.ANALYZING.value,
                        relevance=chunk.relevance,
                    )
                elif gf.is_complete and not chunk.is_final:
                    # same file streamed again: the later copy wins
                    gf.content = ""
                    gf.is_complete = False
                    gf.action = chunk.action

                if chunk.chunk:
                    if not gf.content:
                        await self._emit(
                            job.id, "file",
                            stage=JobStage.GENERATING.value,
                            file_path=path,
                            file_status=FileStatus.WRITING.value,
                        )
                    gf.content += chunk.chunk

                if chunk.is_final and not gf.is_complete:
                    gf.is_complete = True
                    await self._emit(
                        job.id, "file",
                        stage=JobStage.GENERATING.value,
                        file_path=path,
                        file_status=FileStatus.COMPLETE.value,
                        payload={"action": gf.action, "size": len(gf.content)},
                    )

            return files, "".join(answer)

        async def _on_retry(attempt: int, err: BaseException) -> None:
            self._live.pop(job.id, None)
            await self._emit(
                job.id, "retry",
                stage=JobStage.GENERATING.value,
                message=f"Provider error, retrying (attempt {attempt + 1}/{self._retry_policy.maximum_attempts})",
                payload={"error": str(err)},
            )

        files, answer = await retry_async(
            _attempt, self._retry_policy, label=f"generation job {job.id}", on_retry=_on_retry
        )

        return {
            "files": {p: f.content for p, f in files.items() if f.action == "write"},
            "deleted": [p for p, f in files.items() if f.action == "delete"],
            "answer": answer.strip(),
        }

    def _step_validate(self, command_type: CommandType, framework: Framework, gen: Dict[str, Any]) -> Dict[str, Any]:
        files = gen.get("files") or {}
        if command_type == CommandType.QUESTION:
            return {"warnings": []}
        if command_type != CommandType.CREATE and not files:
            # nothing to check (pure deletes or "no changes needed")
            return {"warnings": []}

        issues = validate_project(files, framework, require_complete=command_type == CommandType.CREATE)
        err = first_error(issues)
        if err is not None:
            raise GenerationValidationError(err.message, file=err.file, line=err.line)
        return {"warnings": [i.to_dict() for i in issues]}

    # ----------------------------
    # completion per command type
    # ----------------------------
    async def _finish(self, db, job_id: str, **fields: Any) -> None:
        """Conditional move validating -> complete inside the caller's transaction."""
        result = await db.execute(
            update(GenerationJob)
            .where(GenerationJob.id == job_id, GenerationJob.stage == JobStage.VALIDATING.value)
            .values(stage=JobStage.COMPLETE.value, ended_at=utcnow(), **fields)
        )
        if not result.rowcount:
            raise JobSuperseded(f"Job {job_id} is no longer validating; not completing it")

    async def _complete_create(self, job: GenerationJob, init: Dict[str, Any], gen: Dict[str, Any]) -> None:
        fold = asyncio.ensure_future(self._fold_version(job, gen))
        self._folds[job.id] = fold
        # the deadline may cancel this await, never the fold itself
        await asyncio.shield(fold)

    async def _fold_version(self, job: GenerationJob, gen: Dict[str, Any]) -> None:
        answer = gen.get("answer") or None

        async def _claim(db, version_id: str) -> None:
            await self._finish(db, job.id, version_id=version_id, answer=answer)

        async with self._session_factory() as db:
            version, _ = await append_version(
                db,
                job.project_id,
                gen["files"],
                {
                    "command_type": CommandType.CREATE,
                    "job_id": job.id,
                    "description": job.prompt[:500],
                },
                claim=_claim,
            )

        logger.info("Job %s -> complete (version %s)", job.id, version.version_number)
        await self._emit(
            job.id, "complete",
            stage=JobStage.COMPLETE.value,
            message=f"Version {version.version_number} created",
            payload={"version_id": version.id, "version_number": version.version_number, "file_count": len(gen["files"])},
        )

    async def _complete_incremental(self, job: GenerationJob, init: Dict[str, Any], gen: Dict[str, Any]) -> None:
        base_files: Dict[str, str] = init.get("base_files") or {}
        proposed: List[ProposedModification] = []

        for path, content in sorted((gen.get("files") or {}).items()):
            old = base_files.get(path)
            if old is None:
                proposed.append(ProposedModification(
                    file_path=path,
                    modification_type=ModificationType.CREATE,
                    new_content=content,
                    line_start=1,
                    line_end=max(len(content.splitlines()), 1),
                ))
            elif old != content:
                start, end = _line_range(old, content)
                proposed.append(ProposedModification(
                    file_path=path,
                    modification_type=ModificationType.EDIT,
                    old_content=old,
                    new_content=content,
                    line_start=start,
                    line_end=end,
                ))

        for path in sorted(gen.get("deleted") or []):
            if path in base_files:
                proposed.append(ProposedModification(
                    file_path=path,
                    modification_type=ModificationType.DELETE,
                    old_content=base_files[path],
                ))

        reason = gen.get("answer") or job.prompt
        for p in proposed:
            p.reason = reason[:2000]

        async with self._session_factory() as db:
            records = await propose(db, job.project_id, job.id, proposed, init.get("base_version_number"))
            await self._finish(db, job.id, answer=gen.get("answer") or None)
            await db.commit()

        logger.info("Job %s -> complete (%s modifications proposed)", job.id, len(records))
        await self._emit(
            job.id, "complete",
            stage=JobStage.COMPLETE.value,
            message=f"{len(records)} changes proposed for review",
            payload={"modification_ids": [r.id for r in records]},
        )

    async def _complete_question(self, job: GenerationJob, init: Dict[str, Any], gen: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            await self._finish(db, job.id, answer=gen.get("answer") or "")
            await db.commit()

        logger.info("Job %s -> complete (answer)", job.id)
        await self._emit(job.id, "complete", stage=JobStage.COMPLETE.value, message="Answered")
