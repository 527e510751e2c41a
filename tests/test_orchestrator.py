"""Tests for the project orchestrator."""

import asyncio
import gc
import uuid
from datetime import timedelta

import pytest

from apiforge.core.database import SessionLocal
from apiforge.core.enums import CommandType, JobStage, ProjectStatus
from apiforge.core.errors import JobAlreadyInFlight, NotFoundError
from apiforge.models.generation_job import GenerationJob
from apiforge.models.project import Project
from apiforge.models.types import utcnow
from apiforge.services.event_service import list_events
from apiforge.services.job_engine import TIMEOUT_MESSAGE
from apiforge.services.orchestrator import ProjectOrchestrator, _default_name
from apiforge.services.version_store import list_versions
from tests.conftest import FakeCompletionProvider


async def _project(project_id: str) -> Project:
    async with SessionLocal() as session:
        return await session.get(Project, project_id)


class TestSubmit:
    """Prompt submission and the one-job-per-project rule."""

    async def test_end_to_end_book_api(self, orchestrator: ProjectOrchestrator, user: dict) -> None:
        """Create a book inventory API -> complete -> exactly version 1."""
        project = await orchestrator.create_project(user["id"], "Create a book inventory API")
        job = await orchestrator.submit_prompt(project.id, "Create a book inventory API")

        assert job.stage == JobStage.INITIALIZING.value
        assert job.command_type == CommandType.CREATE.value

        await orchestrator.wait_for_job(job.id)

        done = await orchestrator.get_job(job.id)
        async with SessionLocal() as session:
            versions = await list_versions(session, project.id)
        assert done.stage == JobStage.COMPLETE.value
        assert [v.version_number for v in versions] == [1]
        assert (await _project(project.id)).status == ProjectStatus.COMPLETED.value

    async def test_project_locks_are_released(self, orchestrator: ProjectOrchestrator, user: dict) -> None:
        for _ in range(3):
            project = await orchestrator.create_project(user["id"], "Create an API")
            job = await orchestrator.submit_prompt(project.id, "Create an API")
            await orchestrator.wait_for_job(job.id)
        gc.collect()

        assert len(orchestrator._locks) == 0

    async def test_second_prompt_while_running_is_rejected(self, sandboxes, user: dict) -> None:
        gate = asyncio.Event()
        from apiforge.services.job_engine import JobEngine
        from tests.conftest import FAST_RETRY

        orch = ProjectOrchestrator(JobEngine(FakeCompletionProvider(gate=gate), retry_policy=FAST_RETRY), sandboxes)
        try:
            project = await orch.create_project(user["id"], "Create a book inventory API")
            first = await orch.submit_prompt(project.id, "Create a book inventory API")

            with pytest.raises(JobAlreadyInFlight) as exc:
                await orch.submit_prompt(project.id, "add authentication")
            assert exc.value.job_id == first.id
            assert exc.value.status_code == 409

            gate.set()
            await orch.wait_for_job(first.id)
            # settled: the next prompt is accepted
            follow_up = await orch.submit_prompt(project.id, "add authentication")
            await orch.wait_for_job(follow_up.id)
            assert (await orch.get_job(follow_up.id)).command_type == CommandType.MODIFY.value
        finally:
            await orch.shutdown()

    async def test_concurrent_submits_start_one_job(self, sandboxes, user: dict) -> None:
        gate = asyncio.Event()
        from apiforge.services.job_engine import JobEngine
        from tests.conftest import FAST_RETRY

        orch = ProjectOrchestrator(JobEngine(FakeCompletionProvider(gate=gate), retry_policy=FAST_RETRY), sandboxes)
        try:
            project = await orch.create_project(user["id"], "Create a book inventory API")
            results = await asyncio.gather(
                *[orch.submit_prompt(project.id, "Create a book inventory API") for _ in range(3)],
                return_exceptions=True,
            )
            started = [r for r in results if isinstance(r, GenerationJob)]
            rejected = [r for r in results if isinstance(r, JobAlreadyInFlight)]
            assert len(started) == 1
            assert len(rejected) == 2
            gate.set()
            await orch.wait_for_job(started[0].id)
        finally:
            await orch.shutdown()

    async def test_question_on_empty_project(self, orchestrator: ProjectOrchestrator, completion, user: dict) -> None:
        completion.script = "Start by describing your resources.\n"
        project = await orchestrator.create_project(user["id"], "hello")
        job = await orchestrator.submit_prompt(project.id, "What can you build?")

        await orchestrator.wait_for_job(job.id)

        done = await orchestrator.get_job(job.id)
        assert done.command_type == CommandType.QUESTION.value
        assert done.answer == "Start by describing your resources."

    async def test_forced_modify_on_empty_project_becomes_create(self, orchestrator: ProjectOrchestrator,
                                                                 user: dict) -> None:
        project = await orchestrator.create_project(user["id"], "x")
        job = await orchestrator.submit_prompt(project.id, "books api", command_type=CommandType.MODIFY)
        await orchestrator.wait_for_job(job.id)

        assert job.command_type == CommandType.CREATE.value

    async def test_unknown_project(self, orchestrator: ProjectOrchestrator, schema) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.submit_prompt(str(uuid.uuid4()), "Create an API")


class TestOutcomes:
    """Terminal outcomes on the project and its sandbox."""

    async def test_failed_job_marks_project_failed(self, orchestrator: ProjectOrchestrator, completion,
                                                   user: dict) -> None:
        completion.script = "=== FILE: main.py ===\ndef broken(:\n=== END FILE ===\n"
        project = await orchestrator.create_project(user["id"], "Create an API")
        job = await orchestrator.submit_prompt(project.id, "Create an API")
        await orchestrator.wait_for_job(job.id)

        done = await orchestrator.get_job(job.id)
        assert done.stage == JobStage.ERROR.value
        assert done.error_file == "main.py"
        assert (await _project(project.id)).status == ProjectStatus.FAILED.value

    async def test_completion_refreshes_live_sandbox(self, orchestrator: ProjectOrchestrator, completion,
                                                     sandboxes, sandbox_provider, user: dict) -> None:
        project = await orchestrator.create_project(user["id"], "Create an API")
        first = await orchestrator.submit_prompt(project.id, "Create an API")
        await orchestrator.wait_for_job(first.id)
        sb = await sandboxes.ensure_alive(project.id)

        completion.script = "=== FILE: main.py ===\napp = 'v2'\n=== END FILE ===\n=== FILE: requirements.txt ===\nfastapi\n=== END FILE ===\n"
        second = await orchestrator.submit_prompt(project.id, "rewrite", command_type=CommandType.CREATE)
        await orchestrator.wait_for_job(second.id)

        assert sandbox_provider.files[sb.provider_sandbox_id]["main.py"] == "app = 'v2'\n"

    async def test_rebuilt_sandbox_url_is_reported_on_the_job(self, orchestrator: ProjectOrchestrator, completion,
                                                              sandboxes, sandbox_provider, user: dict) -> None:
        """The sandbox lapsed during generation; followers of the job learn the new url."""
        project = await orchestrator.create_project(user["id"], "Create an API")
        first = await orchestrator.submit_prompt(project.id, "Create an API")
        await orchestrator.wait_for_job(first.id)
        sb = await sandboxes.ensure_alive(project.id)
        sandbox_provider.expire(sb.provider_sandbox_id)

        second = await orchestrator.submit_prompt(project.id, "rewrite", command_type=CommandType.CREATE)
        await orchestrator.wait_for_job(second.id)

        rebuilt = await sandboxes.get(project.id)
        async with SessionLocal() as session:
            events, _ = await list_events(session, second.id)
        moved = [e for e in events if e["type"] == "sandbox"]
        assert rebuilt.provider_sandbox_id != sb.provider_sandbox_id
        assert [e["payload"]["url"] for e in moved] == [rebuilt.url]
        assert events[-1]["type"] == "sandbox"

    async def test_refresh_of_live_sandbox_reports_nothing(self, orchestrator: ProjectOrchestrator, sandboxes,
                                                           user: dict) -> None:
        project = await orchestrator.create_project(user["id"], "Create an API")
        first = await orchestrator.submit_prompt(project.id, "Create an API")
        await orchestrator.wait_for_job(first.id)
        await sandboxes.ensure_alive(project.id)

        second = await orchestrator.submit_prompt(project.id, "rewrite", command_type=CommandType.CREATE)
        await orchestrator.wait_for_job(second.id)

        async with SessionLocal() as session:
            events, _ = await list_events(session, second.id)
        assert not [e for e in events if e["type"] == "sandbox"]

    async def test_completion_without_sandbox_does_not_provision(self, orchestrator: ProjectOrchestrator,
                                                                 sandbox_provider, user: dict) -> None:
        project = await orchestrator.create_project(user["id"], "Create an API")
        job = await orchestrator.submit_prompt(project.id, "Create an API")
        await orchestrator.wait_for_job(job.id)

        assert sandbox_provider.created == 0


class TestStatusAndRecovery:
    """Status projection, deadline sweeps, restart recovery."""

    async def test_status_of_idle_project(self, orchestrator: ProjectOrchestrator, project_id: str) -> None:
        status = await orchestrator.get_status(project_id)

        assert status["stage"] == JobStage.IDLE.value
        assert status["job"] is None
        assert status["progress"]["percent"] == 0

    async def test_status_after_completion(self, orchestrator: ProjectOrchestrator, user: dict) -> None:
        project = await orchestrator.create_project(user["id"], "Create an API")
        job = await orchestrator.submit_prompt(project.id, "Create an API")
        await orchestrator.wait_for_job(job.id)

        status = await orchestrator.get_status(project.id)

        assert status["stage"] == JobStage.COMPLETE.value
        assert status["job"]["id"] == job.id
        assert status["job"]["attempts"] == 1
        assert status["progress"]["percent"] == 100

    async def test_sweep_forces_overdue_jobs_to_error(self, orchestrator: ProjectOrchestrator,
                                                      project_id: str) -> None:
        async with SessionLocal() as session:
            job = GenerationJob(
                id=str(uuid.uuid4()),
                project_id=project_id,
                prompt="Create an API",
                command_type=CommandType.CREATE.value,
                stage=JobStage.GENERATING.value,
                started_at=utcnow() - timedelta(hours=1),
                deadline=utcnow() - timedelta(minutes=1),
                checkpoint={},
            )
            session.add(job)
            await session.commit()

        swept = await orchestrator.sweep_stuck_jobs(project_id)

        stuck = await orchestrator.get_job(job.id)
        assert swept == [job.id]
        assert stuck.stage == JobStage.ERROR.value
        assert stuck.error == TIMEOUT_MESSAGE
        assert (await _project(project_id)).status == ProjectStatus.FAILED.value

    async def test_sweep_leaves_settled_jobs_alone(self, orchestrator: ProjectOrchestrator,
                                                   project_id: str) -> None:
        """A job that completed after its deadline keeps its outcome."""
        async with SessionLocal() as session:
            job = GenerationJob(
                id=str(uuid.uuid4()),
                project_id=project_id,
                prompt="Create an API",
                command_type=CommandType.CREATE.value,
                stage=JobStage.COMPLETE.value,
                started_at=utcnow() - timedelta(hours=1),
                deadline=utcnow() - timedelta(minutes=1),
                ended_at=utcnow(),
                checkpoint={},
            )
            session.add(job)
            await session.commit()

        swept = await orchestrator.sweep_stuck_jobs(project_id)

        assert swept == []
        assert (await orchestrator.get_job(job.id)).stage == JobStage.COMPLETE.value

    async def test_overdue_job_does_not_block_new_prompt(self, orchestrator: ProjectOrchestrator,
                                                         project_id: str) -> None:
        async with SessionLocal() as session:
            session.add(GenerationJob(
                id=str(uuid.uuid4()),
                project_id=project_id,
                prompt="Create an API",
                command_type=CommandType.CREATE.value,
                stage=JobStage.INITIALIZING.value,
                started_at=utcnow() - timedelta(hours=1),
                deadline=utcnow() - timedelta(minutes=1),
                checkpoint={},
            ))
            await session.commit()

        job = await orchestrator.submit_prompt(project_id, "Create an API")
        await orchestrator.wait_for_job(job.id)

        assert (await orchestrator.get_job(job.id)).stage == JobStage.COMPLETE.value

    async def test_resume_incomplete_jobs(self, orchestrator: ProjectOrchestrator, project_id: str) -> None:
        async with SessionLocal() as session:
            job = GenerationJob(
                id=str(uuid.uuid4()),
                project_id=project_id,
                prompt="Create a book inventory API",
                command_type=CommandType.CREATE.value,
                stage=JobStage.GENERATING.value,
                started_at=utcnow(),
                deadline=utcnow() + timedelta(minutes=10),
                checkpoint={},
            )
            session.add(job)
            await session.commit()

        resumed = await orchestrator.resume_incomplete_jobs()
        await orchestrator.wait_for_job(job.id)

        assert resumed == [job.id]
        assert (await orchestrator.get_job(job.id)).stage == JobStage.COMPLETE.value


def test_default_name() -> None:
    assert _default_name("  Books  ", "ignored") == "Books"
    assert _default_name(None, "Create a book API\nwith auth") == "Create a book API"
    assert _default_name("", "   ") == "Untitled API"
