"""Tests for the progress projection and retry policy."""

import pytest

from apiforge.core.enums import JobStage
from apiforge.core.errors import GenerationTransientError, GenerationValidationError, is_transient
from apiforge.core.retry import RetryPolicy, retry_async
from apiforge.services.progress import progress_hint


class TestProgressHint:
    """Percent follows the stage band, and file completion inside generating."""

    def test_generating_tracks_finished_files(self) -> None:
        hint = progress_hint(JobStage.GENERATING, {"a.py": True, "b.py": False})

        assert hint["percent"] == 10 + int(75 * 1 / 2)
        assert hint["files_total"] == 2
        assert hint["files_complete"] == 1
        assert hint["current_file"] == "b.py"

    def test_stage_floors(self) -> None:
        assert progress_hint(JobStage.IDLE)["percent"] == 0
        assert progress_hint(JobStage.VALIDATING)["percent"] == 85
        assert progress_hint(JobStage.COMPLETE)["percent"] == 100

    def test_current_file_only_while_generating(self) -> None:
        assert progress_hint(JobStage.VALIDATING, {"a.py": False})["current_file"] is None


class TestRetry:
    """Bounded retries with exponential backoff."""

    def test_backoff_is_capped(self) -> None:
        policy = RetryPolicy(initial_interval=1.0, backoff_coefficient=2.0, maximum_interval=5.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    async def test_retries_transient_then_succeeds(self) -> None:
        calls = []

        async def _flaky():
            calls.append(1)
            if len(calls) < 3:
                raise GenerationTransientError("timeout")
            return "ok"

        assert await retry_async(_flaky, RetryPolicy(initial_interval=0), label="flaky") == "ok"
        assert len(calls) == 3

    async def test_non_transient_errors_propagate_immediately(self) -> None:
        calls = []

        async def _broken():
            calls.append(1)
            raise GenerationValidationError("bad", file="a.py", line=1)

        with pytest.raises(GenerationValidationError):
            await retry_async(_broken, RetryPolicy(initial_interval=0), label="broken")
        assert len(calls) == 1

    def test_is_transient(self) -> None:
        assert is_transient(TimeoutError("timed out"))
        assert is_transient(RuntimeError("429 Too Many Requests"))
        assert not is_transient(ValueError("invalid prompt"))
