from fastapi import APIRouter

router = APIRouter()
=== END FILE ===
=== DELETE: requirements.txt ===
"""


async def _new_job(
    engine: JobEngine,
    project_id: str,
    prompt: str = "Create a book inventory API",
    command_type: CommandType = CommandType.CREATE,
    stage: JobStage = JobStage.INITIALIZING,
    checkpoint: Optional[dict] = None,
    deadline=None,
) -> str:
    async with SessionLocal() as session:
        started = utcnow()
        job = GenerationJob(
            id=str(uuid.uuid4()),
            project_id=project_id,
            prompt=prompt,
            command_type=command_type.value,
            stage=stage.value,
            started_at=started,
            deadline=deadline or engine.deadline_for(started),
            checkpoint=checkpoint or {},
        )
        session.add(job)
        await session.commit()
        return job.id


async def _events(job_id: str):
    async with SessionLocal() as session:
        events, _ = await list_events(session, job_id)
        return events


async def _count(model, project_id: str) -> int:
    async with SessionLocal() as session:
        return (
            await session.execute(select(func.count(model.id)).where(model.project_id == project_id))
        ).scalar_one()


class TestCreateJobs:
    """Fresh-project generations fold into a new Version."""

    async def test_prompt_to_first_version(self, job_engine: JobEngine, project_id: str) -> None:
        job_id = await _new_job(job_engine, project_id)

        job = await job_engine.run(job_id)

        assert job.stage == JobStage.COMPLETE.value
        assert job.ended_at is not None
        async with SessionLocal() as session:
            [version] = await list_versions(session, project_id)
            diff = await diff_against_previous(session, version)
            tree = await load_tree(session, project_id)
        assert version.version_number == 1
        assert job.version_id == version.id
        assert set(version.files) == {"main.py", "requirements.txt"}
        assert diff.paths_with("new") == ["main.py", "requirements.txt"]
        assert tree == version.files
        assert job.answer == "Here is your API."
        assert job.attempts == 1

    async def test_file_events_keep_stream_order(self, job_engine: JobEngine, project_id: str) -> None:
        job_id = await _new_job(job_engine, project_id)
        await job_engine.run(job_id)

        events = await _events(job_id)
        main_statuses = [e["file_status"] for e in events if e["file_path"] == "main.py"]
        stages = [e["stage"] for e in events if e["type"] == "stage"]

        assert main_statuses == ["analyzing", "writing", "complete"]
        assert stages == ["generating", "validating"]
        assert events[-1]["type"] == "complete"
        assert events[-1]["payload"]["version_number"] == 1
        assert [e["seq"] for e in events] == list(range(1, len(events) + 1))

    async def test_transient_errors_are_retried(self, project_id: str) -> None:
        provider = FakeCompletionProvider(fail_times=2)
        engine = JobEngine(provider, retry_policy=FAST_RETRY)
        job_id = await _new_job(engine, project_id)

        job = await engine.run(job_id)

        assert job.stage == JobStage.COMPLETE.value
        assert provider.calls == 3
        assert job.attempts == 3
        assert len([e for e in await _events(job_id) if e["type"] == "retry"]) == 2

    async def test_retries_are_bounded(self, project_id: str) -> None:
        provider = FakeCompletionProvider(fail_times=10)
        engine = JobEngine(provider, retry_policy=FAST_RETRY)
        job_id = await _new_job(engine, project_id)

        job = await engine.run(job_id)

        assert job.stage == JobStage.ERROR.value
        assert "rate limit" in job.error
        assert provider.calls == FAST_RETRY.maximum_attempts
        assert job.attempts == FAST_RETRY.maximum_attempts
        assert await _count(Version, project_id) == 0


class TestValidation:
    """Structural failures end the job with a location and no version."""

    async def test_syntax_error_reports_file_and_line(self, completion, job_engine: JobEngine,
                                                     project_id: str) -> None:
        completion.script = BOOK_API + BROKEN_MODELS
        job_id = await _new_job(job_engine, project_id)

        job = await job_engine.run(job_id)

        assert job.stage == JobStage.ERROR.value
        assert job.error_file == "models.py"
        assert job.error_line == 12
        assert await _count(Version, project_id) == 0
        last = (await _events(job_id))[-1]
        assert last["type"] == "error"
        assert last["payload"] == {"file": "models.py", "line": 12}

    async def test_failed_attempt_does_not_consume_a_number(self, completion, job_engine: JobEngine,
                                                           project_id: str) -> None:
        completion.script = BROKEN_MODELS
        await job_engine.run(await _new_job(job_engine, project_id))

        completion.script = BOOK_API
        job = await job_engine.run(await _new_job(job_engine, project_id))

        async with SessionLocal() as session:
            [version] = await list_versions(session, project_id)
        assert job.stage == JobStage.COMPLETE.value
        assert version.version_number == 1


class TestIncrementalJobs:
    """Follow-up prompts propose modifications instead of versions."""

    async def test_modify_proposes_edit_create_delete(self, completion, job_engine: JobEngine,
                                                     project_id: str) -> None:
        await job_engine.run(await _new_job(job_engine, project_id))
        async with SessionLocal() as session:
            before = await load_tree(session, project_id)

        completion.script = MODIFY_REPLY
        job_id = await _new_job(job_engine, project_id, "add a books router", CommandType.MODIFY)
        job = await job_engine.run(job_id)

        assert job.stage == JobStage.COMPLETE.value
        assert await _count(Version, project_id) == 1
        async with SessionLocal() as session:
            mods = (
                await session.execute(select(CodeModification).where(CodeModification.message_id == job_id))
            ).scalars().all()
            after = await load_tree(session, project_id)

        by_path = {m.file_path: m for m in mods}
        assert by_path["main.py"].modification_type == ModificationType.EDIT.value
        assert by_path["main.py"].old_content == before["main.py"]
        assert by_path["routes/books.py"].modification_type == ModificationType.CREATE.value
        assert by_path["routes/books.py"].old_content is None
        assert by_path["requirements.txt"].modification_type == ModificationType.DELETE.value
        assert {m.status for m in mods} == {"pending"}
        assert {m.base_version_number for m in mods} == {1}
        assert by_path["main.py"].reason == "Added a books router."
        # nothing touches the tree until the user applies
        assert after == before

    async def test_question_answers_without_files(self, completion, job_engine: JobEngine,
                                                  project_id: str) -> None:
        await job_engine.run(await _new_job(job_engine, project_id))

        completion.script = "The list endpoint is GET /books.\n"
        job = await job_engine.run(
            await _new_job(job_engine, project_id, "how do I list books?", CommandType.QUESTION)
        )

        assert job.stage == JobStage.COMPLETE.value
        assert job.answer == "The list endpoint is GET /books."
        assert await _count(Version, project_id) == 1
        assert await _count(CodeModification, project_id) == 0

    async def test_base_context_includes_current_files(self, completion, job_engine: JobEngine,
                                                      project_id: str) -> None:
        await job_engine.run(await _new_job(job_engine, project_id))
        completion.script = MODIFY_REPLY
        await job_engine.run(await _new_job(job_engine, project_id, "add a router", CommandType.MODIFY))

        assert "main.py" in completion.contexts[-1]["system_prompt"]


class TestDeadlinesAndRecovery:
    """Timeouts and checkpoint resumption."""

    async def test_deadline_forces_error(self, project_id: str) -> None:
        provider = FakeCompletionProvider(gate=asyncio.Event())
        engine = JobEngine(provider, retry_policy=FAST_RETRY)
        job_id = await _new_job(engine, project_id, deadline=utcnow() + timedelta(milliseconds=300))

        job = await engine.run(job_id)

        assert job.stage == JobStage.ERROR.value
        assert job.error == TIMEOUT_MESSAGE
        assert await _count(Version, project_id) == 0

    async def test_resume_skips_memoized_steps(self, completion, job_engine: JobEngine, project_id: str) -> None:
        checkpoint = {
            "steps": {
                "initializing": {"context": {"system_prompt": ""}, "base_files": {}, "base_version_number": None},
                "generating": {"files": {"main.py": "app = None\n", "requirements.txt": "fastapi\n"},
                               "deleted": [], "answer": ""},
            }
        }
        job_id = await _new_job(job_engine, project_id, stage=JobStage.VALIDATING, checkpoint=checkpoint)

        job = await job_engine.run(job_id)

        assert job.stage == JobStage.COMPLETE.value
        assert completion.calls == 0
        async with SessionLocal() as session:
            [version] = await list_versions(session, project_id)
        assert version.files == {"main.py": "app = None\n", "requirements.txt": "fastapi\n"}

    async def test_terminal_job_is_left_alone(self, job_engine: JobEngine, project_id: str) -> None:
        job_id = await _new_job(job_engine, project_id, stage=JobStage.ERROR)

        job = await job_engine.run(job_id)

        assert job.stage == JobStage.ERROR.value

class TestVersionFold:
    """A version exists only when its job is complete."""

    async def _owners(self, project_id: str):
        async with SessionLocal() as session:
            versions = await list_versions(session, project_id)
            jobs = {
                j.id: j
                for j in (
                    await session.execute(select(GenerationJob).where(GenerationJob.project_id == project_id))
                ).scalars()
            }
        return versions, jobs

    async def test_deadline_during_fold_keeps_job_and_version_consistent(self, job_engine: JobEngine,
                                                                          project_id: str,
                                                                          monkeypatch) -> None:
        """The deadline fires while the version is being written; the fold finishes on its own."""
        finish = job_engine._finish

        async def _slow_finish(db, job_id, **fields):
            await asyncio.sleep(0.6)
            await finish(db, job_id, **fields)

        monkeypatch.setattr(job_engine, "_finish", _slow_finish)
        job_id = await _new_job(job_engine, project_id, deadline=utcnow() + timedelta(milliseconds=300))

        job = await job_engine.run(job_id)

        versions, jobs = await self._owners(project_id)
        assert job.stage == JobStage.COMPLETE.value
        assert [v.version_number for v in versions] == [1]
        assert job.version_id == versions[0].id
        assert job.error is None
        for v in versions:
            assert jobs[v.job_id].stage == JobStage.COMPLETE.value

    async def test_sweep_before_fold_leaves_no_version(self, job_engine: JobEngine, project_id: str,
                                                       monkeypatch) -> None:
        """A concurrent sweep marks the job failed first; the fold must not record anything."""
        finish = job_engine._finish

        async def _swept_then_finish(db, job_id, **fields):
            async with SessionLocal() as other:
                await other.execute(
                    update(GenerationJob)
                    .where(GenerationJob.id == job_id)
                    .values(stage=JobStage.ERROR.value, error=TIMEOUT_MESSAGE, ended_at=utcnow())
                )
                await other.commit()
            await finish(db, job_id, **fields)

        monkeypatch.setattr(job_engine, "_finish", _swept_then_finish)
        job_id = await _new_job(job_engine, project_id)

        job = await job_engine.run(job_id)

        versions, _ = await self._owners(project_id)
        async with SessionLocal() as session:
            tree = await load_tree(session, project_id)
        assert job.stage == JobStage.ERROR.value
        assert job.error == TIMEOUT_MESSAGE
        assert job.version_id is None
        assert versions == []
        assert tree == {}
        assert not [e for e in await _events(job_id) if e["type"] == "complete"]

    async def test_number_is_not_consumed_by_a_superseded_fold(self, completion, job_engine: JobEngine,
                                                               project_id: str, monkeypatch) -> None:
        finish = job_engine._finish
        calls = []

        async def _first_superseded(db, job_id, **fields):
            if not calls:
                async with SessionLocal() as other:
                    await other.execute(
                        update(GenerationJob).where(GenerationJob.id == job_id).values(stage=JobStage.ERROR.value)
                    )
                    await other.commit()
            calls.append(job_id)
            await finish(db, job_id, **fields)

        monkeypatch.setattr(job_engine, "_finish", _first_superseded)
        await job_engine.run(await _new_job(job_engine, project_id))
        job = await job_engine.run(await _new_job(job_engine, project_id))

        versions, _ = await self._owners(project_id)
        assert job.stage == JobStage.COMPLETE.value
        assert [v.version_number for v in versions] == [1]
        assert versions[0].job_id == job.id


def test_line_range_of_changed_region() -> None:
    old = "a\nb\nc\nd\n"
    new = "a\nB\nC\nd\n"
    assert _line_range(old, new) == (2, 3)
    assert _line_range(old, old) == (None, None)
