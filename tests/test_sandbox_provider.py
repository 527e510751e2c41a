"""Tests for the local sandbox provider."""

import asyncio
import json
import time

import pytest

from apiforge.core.errors import SandboxProvisionError
from apiforge.services.sandbox_provider import META_FILE, LocalSandboxProvider


@pytest.fixture
def provider(tmp_path) -> LocalSandboxProvider:
    return LocalSandboxProvider(root=tmp_path, port_range=(9100, 9101), idle_ttl_seconds=60)


class TestLocalSandboxProvider:
    """Files on disk, ports from the range, idle reaping."""

    async def test_create_writes_files_and_allocates_port(self, provider: LocalSandboxProvider, tmp_path) -> None:
        sid, url = await provider.create({"main.py": "x = 1\n", "app/models.py": "y = 2\n"})

        assert url == "http://127.0.0.1:9100"
        assert (tmp_path / sid / "app" / "main.py").read_text() == "x = 1\n"
        assert (tmp_path / sid / "app" / "app" / "models.py").read_text() == "y = 2\n"
        assert (await provider.probe(sid)).alive

    async def test_port_range_exhaustion(self, provider: LocalSandboxProvider) -> None:
        await provider.create({})
        await provider.create({})
        with pytest.raises(SandboxProvisionError):
            await provider.create({})

    async def test_push_and_delete_files(self, provider: LocalSandboxProvider, tmp_path) -> None:
        sid, _ = await provider.create({"a.py": "a\n", "b.py": "b\n"})

        await provider.push_files(sid, {"a.py": "A\n"}, deleted=["b.py"])

        root = tmp_path / sid / "app"
        assert (root / "a.py").read_text() == "A\n"
        assert not (root / "b.py").exists()

    async def test_refuses_paths_outside_sandbox(self, provider: LocalSandboxProvider) -> None:
        sid, _ = await provider.create({})
        with pytest.raises(SandboxProvisionError):
            await provider.push_files(sid, {"../escape.py": "x\n"})

    async def test_exec_returns_output(self, provider: LocalSandboxProvider) -> None:
        sid, _ = await provider.create({"a.txt": "hello\n"})
        assert await provider.exec(sid, "cat a.txt") == "hello\n"

    async def test_destroy_and_probe(self, provider: LocalSandboxProvider) -> None:
        sid, _ = await provider.create({})
        await provider.destroy(sid)
        assert not (await provider.probe(sid)).alive

    async def test_idle_sandboxes_are_reaped(self, provider: LocalSandboxProvider, tmp_path) -> None:
        sid, _ = await provider.create({})
        meta_path = tmp_path / sid / META_FILE
        meta = json.loads(meta_path.read_text())
        meta["last_seen"] = 0
        meta_path.write_text(json.dumps(meta))

        assert not (await provider.probe(sid)).alive
        assert not (tmp_path / sid).exists()


class TestLocalProcesses:
    """Preview server processes are stopped and reaped, never left behind."""

    async def test_destroy_reaps_server_process(self, provider: LocalSandboxProvider) -> None:
        sid, _ = await provider.create({}, start_command="sleep 30")
        proc = provider._processes[sid]

        await provider.destroy(sid)

        assert proc.returncode is not None

    async def test_pause_stops_server_and_resume_restarts_it(self, provider: LocalSandboxProvider,
                                                             tmp_path) -> None:
        sid, url = await provider.create({"a.py": "a\n"}, start_command="sleep 30")
        first = provider._processes[sid]

        await provider.pause(sid)

        assert first.returncode is not None
        assert not (await provider.probe(sid)).alive
        assert (tmp_path / sid / "app" / "a.py").read_text() == "a\n"

        assert await provider.resume(sid) == url
        assert provider._processes[sid] is not first
        assert (await provider.probe(sid)).alive
        await provider.destroy(sid)

    async def test_resume_of_expired_sandbox_fails(self, provider: LocalSandboxProvider, tmp_path) -> None:
        sid, _ = await provider.create({})
        await provider.pause(sid)
        meta_path = tmp_path / sid / META_FILE
        meta = json.loads(meta_path.read_text())
        meta["last_seen"] = 0
        meta_path.write_text(json.dumps(meta))

        with pytest.raises(SandboxProvisionError):
            await provider.resume(sid)
        assert not (tmp_path / sid).exists()

    async def test_exec_timeout_kills_command(self, tmp_path) -> None:
        provider = LocalSandboxProvider(root=tmp_path, port_range=(9100, 9101), idle_ttl_seconds=60,
                                        command_timeout_seconds=0.2)
        sid, _ = await provider.create({})
        started = time.monotonic()

        with pytest.raises(asyncio.TimeoutError):
            await provider.exec(sid, "sleep 30")

        assert time.monotonic() - started < 10
