"""Tests for the sandbox lifecycle manager."""

import asyncio
import gc

import pytest

from apiforge.core.database import SessionLocal
from apiforge.core.enums import SandboxState
from apiforge.core.errors import (
    NotFoundError,
    SandboxCommandError,
    SandboxNotRunning,
    SandboxProvisionError,
    SandboxRestoreError,
)
from apiforge.services.sandbox_manager import SandboxManager, sandbox_to_dict
from apiforge.services.version_store import append_version, get_latest
from tests.conftest import make_project

FILES = {"main.py": "from fastapi import FastAPI\napp = FastAPI()\n", "requirements.txt": "fastapi\n"}


async def _seed(project_id: str, files=None) -> None:
    async with SessionLocal() as session:
        await append_version(session, project_id, files or FILES)


class TestEnsureAlive:
    """Provisioning, probing and reactive restoration."""

    async def test_absent_provisions_once(self, sandboxes: SandboxManager, sandbox_provider,
                                          project_id: str) -> None:
        await _seed(project_id)

        first = await sandboxes.ensure_alive(project_id)
        again = await sandboxes.ensure_alive(project_id)

        assert first.state == SandboxState.ALIVE.value
        assert first.url == "https://fake-1.sandbox.test"
        assert again.provider_sandbox_id == first.provider_sandbox_id
        assert sandbox_provider.created == 1
        assert sandbox_provider.files[first.provider_sandbox_id] == FILES

    async def test_expired_sandbox_is_restored_from_latest_version(self, sandboxes: SandboxManager,
                                                                   sandbox_provider, project_id: str) -> None:
        """Probe says dead -> restoring -> alive with the latest completed files."""
        await _seed(project_id)
        first = await sandboxes.ensure_alive(project_id)
        sandbox_provider.expire(first.provider_sandbox_id)
        notified = []

        restored = await sandboxes.ensure_alive(project_id, on_restored=notified.append)

        async with SessionLocal() as session:
            latest = await get_latest(session, project_id)
        assert restored.state == SandboxState.ALIVE.value
        assert restored.provider_sandbox_id != first.provider_sandbox_id
        assert restored.restore_count == 1
        assert notified == [restored.url]
        assert sandbox_provider.files[restored.provider_sandbox_id] == latest.files
        assert first.provider_sandbox_id in sandbox_provider.destroyed

    async def test_async_restore_callback(self, sandboxes: SandboxManager, sandbox_provider,
                                          project_id: str) -> None:
        await _seed(project_id)
        first = await sandboxes.ensure_alive(project_id)
        sandbox_provider.expire(first.provider_sandbox_id)
        seen = []

        async def _notify(url: str) -> None:
            seen.append(url)

        restored = await sandboxes.ensure_alive(project_id, on_restored=_notify)
        assert seen == [restored.url]

    async def test_provision_failure_is_retried(self, sandboxes: SandboxManager, sandbox_provider,
                                                project_id: str) -> None:
        await _seed(project_id)
        sandbox_provider.fail_creates = 2

        sb = await sandboxes.ensure_alive(project_id)

        assert sb.state == SandboxState.ALIVE.value
        assert sandbox_provider.created == 1

    async def test_provision_gives_up_as_failed(self, sandboxes: SandboxManager, sandbox_provider,
                                                project_id: str) -> None:
        await _seed(project_id)
        sandbox_provider.fail_creates = 10

        with pytest.raises(SandboxProvisionError):
            await sandboxes.ensure_alive(project_id)

        sb = await sandboxes.get(project_id)
        view = sandbox_to_dict(sb)
        assert sb.state == SandboxState.FAILED.value
        assert view["preview_unavailable"] is True
        assert "provider unavailable" in view["error"]

    async def test_failed_sandbox_recovers_on_next_call(self, sandboxes: SandboxManager, sandbox_provider,
                                                        project_id: str) -> None:
        await _seed(project_id)
        sandbox_provider.fail_creates = 10
        with pytest.raises(SandboxProvisionError):
            await sandboxes.ensure_alive(project_id)

        sandbox_provider.fail_creates = 0
        sb = await sandboxes.ensure_alive(project_id)

        assert sb.state == SandboxState.ALIVE.value

    async def test_unknown_project(self, sandboxes: SandboxManager, schema) -> None:
        with pytest.raises(NotFoundError):
            await sandboxes.ensure_alive("missing-project")

    async def test_concurrent_first_calls_provision_once(self, sandboxes: SandboxManager, sandbox_provider,
                                                         project_id: str) -> None:
        """Two callers racing from absent share one provisioning."""
        await _seed(project_id)

        first, second = await asyncio.gather(
            sandboxes.ensure_alive(project_id), sandboxes.ensure_alive(project_id)
        )

        assert sandbox_provider.created == 1
        assert first.provider_sandbox_id == second.provider_sandbox_id
        assert second.state == SandboxState.ALIVE.value

    async def test_project_locks_are_released(self, sandboxes: SandboxManager, user) -> None:
        for _ in range(3):
            pid = await make_project(user["id"])
            await _seed(pid)
            await sandboxes.ensure_alive(pid)
            await sandboxes.keepalive(pid)
        gc.collect()

        assert len(sandboxes._locks) == 0


class TestKeepaliveAndRestart:
    """Keepalive only probes; restart always rebuilds."""

    async def test_keepalive_reports_alive(self, sandboxes: SandboxManager, project_id: str) -> None:
        await _seed(project_id)
        await sandboxes.ensure_alive(project_id)

        result = await sandboxes.keepalive(project_id)

        assert result["alive"] is True
        assert result["needs_restart"] is False
        assert result["sandbox"]["last_keepalive_at"] is not None

    async def test_keepalive_flags_expiry_without_provisioning(self, sandboxes: SandboxManager, sandbox_provider,
                                                               project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        sandbox_provider.expire(sb.provider_sandbox_id)

        result = await sandboxes.keepalive(project_id)

        assert result["alive"] is False
        assert result["needs_restart"] is True
        assert result["sandbox"]["state"] == SandboxState.STALE.value
        assert sandbox_provider.created == 1

    async def test_keepalive_without_sandbox(self, sandboxes: SandboxManager, project_id: str) -> None:
        result = await sandboxes.keepalive(project_id)

        assert result["needs_restart"] is True
        assert result["sandbox"]["state"] == SandboxState.ABSENT.value

    async def test_manual_restart_rebuilds_live_sandbox(self, sandboxes: SandboxManager, sandbox_provider,
                                                        project_id: str) -> None:
        await _seed(project_id)
        first = await sandboxes.ensure_alive(project_id)

        restarted = await sandboxes.manual_restart(project_id)

        assert restarted.provider_sandbox_id != first.provider_sandbox_id
        assert restarted.state == SandboxState.ALIVE.value
        assert sandbox_provider.created == 2

    async def test_restore_failure_surfaces_failed(self, sandboxes: SandboxManager, sandbox_provider,
                                                   project_id: str) -> None:
        await _seed(project_id)
        await sandboxes.ensure_alive(project_id)
        sandbox_provider.fail_creates = 10

        with pytest.raises(SandboxRestoreError):
            await sandboxes.manual_restart(project_id)

        assert (await sandboxes.get(project_id)).state == SandboxState.FAILED.value


class TestRefreshAndPush:
    """File propagation into a live sandbox."""

    async def test_refresh_pushes_latest_files(self, sandboxes: SandboxManager, sandbox_provider,
                                               project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        await _seed(project_id, {"main.py": "app = 2\n"})

        await sandboxes.refresh(project_id)

        assert sandbox_provider.files[sb.provider_sandbox_id]["main.py"] == "app = 2\n"

    async def test_refresh_restores_dead_sandbox(self, sandboxes: SandboxManager, sandbox_provider,
                                                 project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        sandbox_provider.expire(sb.provider_sandbox_id)

        refreshed = await sandboxes.refresh(project_id)

        assert refreshed.provider_sandbox_id != sb.provider_sandbox_id
        assert refreshed.restore_count == 1

    async def test_refresh_reports_url_of_rebuilt_sandbox(self, sandboxes: SandboxManager, sandbox_provider,
                                                          project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        sandbox_provider.expire(sb.provider_sandbox_id)
        seen = []

        refreshed = await sandboxes.refresh(project_id, on_restored=seen.append)

        assert seen == [refreshed.url]
        assert refreshed.url != sb.url

    async def test_refresh_without_sandbox_is_noop(self, sandboxes: SandboxManager, sandbox_provider,
                                                   project_id: str) -> None:
        await _seed(project_id)
        assert await sandboxes.refresh(project_id) is None
        assert sandbox_provider.created == 0

    async def test_failed_push_marks_stale(self, sandboxes: SandboxManager, sandbox_provider,
                                           project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        sandbox_provider.expire(sb.provider_sandbox_id)

        await sandboxes.push_changes(project_id, {"main.py": "x\n"})

        assert (await sandboxes.get(project_id)).state == SandboxState.STALE.value

    async def test_destroy(self, sandboxes: SandboxManager, sandbox_provider, project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)

        await sandboxes.destroy(project_id)

        after = await sandboxes.get(project_id)
        assert after.state == SandboxState.ABSENT.value
        assert after.url is None
        assert sandbox_provider.destroyed == [sb.provider_sandbox_id]


class TestPauseAndResume:
    """Pausing keeps the environment; resuming brings it back with current files."""

    async def test_pause_keeps_environment(self, sandboxes: SandboxManager, sandbox_provider,
                                           project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)

        paused = await sandboxes.pause(project_id)
        result = await sandboxes.keepalive(project_id)

        assert paused.state == SandboxState.PAUSED.value
        assert paused.provider_sandbox_id == sb.provider_sandbox_id
        assert sandbox_to_dict(paused)["paused"] is True
        assert result["alive"] is False
        assert result["paused"] is True
        assert result["needs_restart"] is False
        assert sb.provider_sandbox_id in sandbox_provider.paused
        assert sandbox_provider.destroyed == []

    async def test_pause_twice_is_a_no_op(self, sandboxes: SandboxManager, project_id: str) -> None:
        await _seed(project_id)
        await sandboxes.ensure_alive(project_id)

        await sandboxes.pause(project_id)
        again = await sandboxes.pause(project_id)

        assert again.state == SandboxState.PAUSED.value

    async def test_pause_requires_a_sandbox(self, sandboxes: SandboxManager, project_id: str) -> None:
        with pytest.raises(NotFoundError):
            await sandboxes.pause(project_id)

    async def test_pause_requires_running_sandbox(self, sandboxes: SandboxManager, sandbox_provider,
                                                  project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        sandbox_provider.expire(sb.provider_sandbox_id)
        await sandboxes.keepalive(project_id)

        with pytest.raises(SandboxNotRunning):
            await sandboxes.pause(project_id)

    async def test_pause_of_reaped_sandbox_marks_stale(self, sandboxes: SandboxManager, sandbox_provider,
                                                       project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        sandbox_provider.expire(sb.provider_sandbox_id)

        after = await sandboxes.pause(project_id)

        assert after.state == SandboxState.STALE.value

    async def test_resume_pushes_files_written_while_paused(self, sandboxes: SandboxManager, sandbox_provider,
                                                           project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        await sandboxes.pause(project_id)
        await _seed(project_id, {"main.py": "app = 2\n"})

        resumed = await sandboxes.resume(project_id)

        assert resumed.state == SandboxState.ALIVE.value
        assert resumed.provider_sandbox_id == sb.provider_sandbox_id
        assert resumed.restore_count == 0
        assert sandbox_provider.files[sb.provider_sandbox_id]["main.py"] == "app = 2\n"
        assert sandbox_provider.created == 1

    async def test_resume_restores_when_provider_lost_it(self, sandboxes: SandboxManager, sandbox_provider,
                                                        project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        await sandboxes.pause(project_id)
        sandbox_provider.expire(sb.provider_sandbox_id)
        seen = []

        resumed = await sandboxes.resume(project_id, on_restored=seen.append)

        assert resumed.state == SandboxState.ALIVE.value
        assert resumed.provider_sandbox_id != sb.provider_sandbox_id
        assert resumed.restore_count == 1
        assert seen == [resumed.url]

    async def test_ensure_alive_resumes_paused_sandbox(self, sandboxes: SandboxManager, sandbox_provider,
                                                       project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)
        await sandboxes.pause(project_id)

        again = await sandboxes.ensure_alive(project_id)

        assert again.state == SandboxState.ALIVE.value
        assert again.provider_sandbox_id == sb.provider_sandbox_id
        assert sandbox_provider.created == 1

    async def test_refresh_leaves_paused_sandbox_alone(self, sandboxes: SandboxManager, sandbox_provider,
                                                       project_id: str) -> None:
        await _seed(project_id)
        await sandboxes.ensure_alive(project_id)
        await sandboxes.pause(project_id)

        refreshed = await sandboxes.refresh(project_id)

        assert refreshed.state == SandboxState.PAUSED.value
        assert sandbox_provider.created == 1

    async def test_resume_without_sandbox(self, sandboxes: SandboxManager, project_id: str) -> None:
        with pytest.raises(NotFoundError):
            await sandboxes.resume(project_id)


class TestExec:
    """Commands run only in a running sandbox."""

    async def test_exec_returns_output(self, sandboxes: SandboxManager, sandbox_provider,
                                       project_id: str) -> None:
        await _seed(project_id)
        sb = await sandboxes.ensure_alive(project_id)

        result = await sandboxes.exec(project_id, "pip list")

        assert result == {"command": "pip list", "output": "ran pip list\n"}
        assert sandbox_provider.commands == [(sb.provider_sandbox_id, "pip list")]

    async def test_exec_needs_running_sandbox(self, sandboxes: SandboxManager, sandbox_provider,
                                              project_id: str) -> None:
        await _seed(project_id)
        with pytest.raises(SandboxNotRunning):
            await sandboxes.exec(project_id, "ls")

        await sandboxes.ensure_alive(project_id)
        await sandboxes.pause(project_id)
        with pytest.raises(SandboxNotRunning):
            await sandboxes.exec(project_id, "ls")

        assert sandbox_provider.commands == []

    async def test_exec_timeout(self, sandboxes: SandboxManager, sandbox_provider, project_id: str) -> None:
        await _seed(project_id)
        await sandboxes.ensure_alive(project_id)
        sandbox_provider.exec_error = asyncio.TimeoutError()

        with pytest.raises(SandboxCommandError) as info:
            await sandboxes.exec(project_id, "sleep 999")

        assert info.value.message == "Command timed out"
        assert info.value.extra == {"command": "sleep 999"}

    async def test_exec_failure_is_not_retried(self, sandboxes: SandboxManager, sandbox_provider,
                                               project_id: str) -> None:
        await _seed(project_id)
        await sandboxes.ensure_alive(project_id)
        sandbox_provider.exec_error = RuntimeError("connection reset")

        with pytest.raises(SandboxCommandError):
            await sandboxes.exec(project_id, "ls")

        assert len(sandbox_provider.commands) == 1
        assert (await sandboxes.get(project_id)).state == SandboxState.ALIVE.value
