# FILE: apiforge/services/sandbox_provider.py
"""
Sandbox provider adapters.

- LocalSandboxProvider: materializes files under SANDBOX_ROOT/<sandbox_id>/ and
  runs the preview server as a local process on a port from the configured range.
  Sandboxes idle for longer than SANDBOX_IDLE_TTL_SECONDS are reaped, the same
  way a hosted provider expires idle environments.
- HttpSandboxProvider: thin client for a remote sandbox REST API.

Both satisfy the SandboxProvider protocol; the lifecycle manager only talks to that.
"""

import asyncio
import json
import logging
import os
import shutil
import signal
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Protocol, Tuple

import httpx

from apiforge.core.config import (
    SANDBOX_API_KEY,
    SANDBOX_API_URL,
    SANDBOX_COMMAND_TIMEOUT_SECONDS,
    SANDBOX_HOST,
    SANDBOX_IDLE_TTL_SECONDS,
    SANDBOX_PORT_RANGE_END,
    SANDBOX_PORT_RANGE_START,
    SANDBOX_PROVIDER,
    SANDBOX_ROOT,
)
from apiforge.core.errors import SandboxProvisionError

logger = logging.getLogger("apiforge.sandbox.provider")

META_FILE = ".sandbox_meta.json"
LOG_FILE = ".sandbox.log"
FILES_DIRNAME = "app"
MAX_OUTPUT_BYTES = 16000
KILL_GRACE_SECONDS = 5


@dataclass
class ProbeResult:
    alive: bool
    last_seen: Optional[float] = None


class SandboxProvider(Protocol):
    async def create(
        self,
        files: Dict[str, str],
        start_command: Optional[str] = None,
        port: Optional[int] = None,
    ) -> Tuple[str, str]:
        """Returns (sandbox_id, url)."""
        ...

    async def exec(self, sandbox_id: str, command: str, background: bool = False) -> str:
        ...

    async def probe(self, sandbox_id: str) -> ProbeResult:
        ...

    async def push_files(
        self,
        sandbox_id: str,
        files: Dict[str, str],
        deleted: Iterable[str] = (),
    ) -> None:
        ...

    async def pause(self, sandbox_id: str) -> None:
        """Stop the server, keep the filesystem."""
        ...

    async def resume(self, sandbox_id: str) -> str:
        """Start a paused sandbox again. Returns its (possibly new) url."""
        ...

    async def destroy(self, sandbox_id: str) -> None:
        ...


# ----------------------------
# Disk helpers
# ----------------------------
def _write_json(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    tmp.replace(path)


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None


def _safe_join(root: Path, rel: str) -> Path:
    target = (root / rel).resolve()
    if root.resolve() not in target.parents:
        raise SandboxProvisionError(f"Refusing to write outside sandbox: {rel}")
    return target


def _write_tree(root: Path, files: Dict[str, str]) -> None:
    for rel, content in files.items():
        target = _safe_join(root, rel)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content or "", encoding="utf-8")


def _tail(data: bytes) -> str:
    return data[-MAX_OUTPUT_BYTES:].decode("utf-8", errors="replace")


class LocalSandboxProvider:
    def __init__(
        self,
        root: Path = SANDBOX_ROOT,
        host: str = SANDBOX_HOST,
        port_range: Tuple[int, int] = (SANDBOX_PORT_RANGE_START, SANDBOX_PORT_RANGE_END),
        idle_ttl_seconds: int = SANDBOX_IDLE_TTL_SECONDS,
        command_timeout_seconds: float = SANDBOX_COMMAND_TIMEOUT_SECONDS,
    ):
        self.root = Path(root)
        self.host = host
        self.port_range = port_range
        self.idle_ttl_seconds = idle_ttl_seconds
        self.command_timeout_seconds = command_timeout_seconds
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._ports: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _dir(self, sandbox_id: str) -> Path:
        return self.root / sandbox_id

    def _files_dir(self, sandbox_id: str) -> Path:
        return self._dir(sandbox_id) / FILES_DIRNAME

    def _meta(self, sandbox_id: str) -> Optional[Dict[str, Any]]:
        return _read_json(self._dir(sandbox_id) / META_FILE)

    def _touch(self, sandbox_id: str, meta: Dict[str, Any]) -> float:
        now = time.time()
        meta["last_seen"] = now
        _write_json(self._dir(sandbox_id) / META_FILE, meta)
        return now

    def _allocate_port(self) -> int:
        used = set(self._ports.values())
        start, end = self.port_range
        for port in range(start, end + 1):
            if port not in used:
                return port
        raise SandboxProvisionError("No free sandbox port left in the configured range")

    async def create(
        self,
        files: Dict[str, str],
        start_command: Optional[str] = None,
        port: Optional[int] = None,
    ) -> Tuple[str, str]:
        await self.reap_idle()

        async with self._lock:
            sandbox_id = f"sbx-{uuid.uuid4().hex[:12]}"
            # ports come from the local range; the start command reads $PORT
            port = self._allocate_port()
            self._ports[sandbox_id] = port

        files_dir = self._files_dir(sandbox_id)
        files_dir.mkdir(parents=True, exist_ok=True)
        _write_tree(files_dir, files)

        url = f"http://{self.host}:{port}"
        meta = {
            "id": sandbox_id,
            "port": port,
            "url": url,
            "start_command": start_command,
            "created_at": time.time(),
        }
        self._touch(sandbox_id, meta)

        if start_command:
            await self.exec(sandbox_id, start_command, background=True)

        logger.info("Local sandbox %s created on %s (%s files)", sandbox_id, url, len(files))
        return sandbox_id, url

    async def exec(self, sandbox_id: str, command: str, background: bool = False) -> str:
        meta = self._meta(sandbox_id)
        if meta is None:
            raise SandboxProvisionError(f"Sandbox {sandbox_id} does not exist")

        env = {**os.environ, "PORT": str(meta.get("port") or ""), "HOST": "0.0.0.0"}
        cwd = self._files_dir(sandbox_id)

        if background:
            # one server per sandbox: the old one releases the port first
            old = self._processes.pop(sandbox_id, None)
            if old is not None:
                await self._kill(old)
            log = open(self._dir(sandbox_id) / LOG_FILE, "ab")
            try:
                proc = await asyncio.create_subprocess_shell(
                    command,
                    cwd=cwd,
                    env=env,
                    stdout=log,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            finally:
                log.close()
            self._processes[sandbox_id] = proc
            return f"started pid {proc.pid}"

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self.command_timeout_seconds)
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise
        return _tail(out or b"")

    async def probe(self, sandbox_id: str) -> ProbeResult:
        meta = self._meta(sandbox_id)
        if meta is None:
            return ProbeResult(alive=False)

        last_seen = float(meta.get("last_seen") or 0)
        if time.time() - last_seen > self.idle_ttl_seconds:
            logger.info("Local sandbox %s idle for too long, reaping", sandbox_id)
            await self.destroy(sandbox_id)
            return ProbeResult(alive=False, last_seen=last_seen)

        if meta.get("paused"):
            return ProbeResult(alive=False, last_seen=last_seen)

        proc = self._processes.get(sandbox_id)
        if meta.get("start_command") and (proc is None or proc.returncode is not None):
            # server process gone (crash or api restart)
            return ProbeResult(alive=False, last_seen=last_seen)

        return ProbeResult(alive=True, last_seen=self._touch(sandbox_id, meta))

    async def push_files(
        self,
        sandbox_id: str,
        files: Dict[str, str],
        deleted: Iterable[str] = (),
    ) -> None:
        meta = self._meta(sandbox_id)
        if meta is None:
            raise SandboxProvisionError(f"Sandbox {sandbox_id} does not exist")
        root = self._files_dir(sandbox_id)
        _write_tree(root, files)
        for rel in deleted:
            target = _safe_join(root, rel)
            if target.exists():
                target.unlink()
        self._touch(sandbox_id, meta)

    async def pause(self, sandbox_id: str) -> None:
        meta = self._meta(sandbox_id)
        if meta is None:
            raise SandboxProvisionError(f"Sandbox {sandbox_id} does not exist")
        proc = self._processes.pop(sandbox_id, None)
        if proc is not None:
            await self._kill(proc)
        meta["paused"] = True
        self._touch(sandbox_id, meta)
        logger.info("Local sandbox %s paused", sandbox_id)

    async def resume(self, sandbox_id: str) -> str:
        meta = self._meta(sandbox_id)
        if meta is None:
            raise SandboxProvisionError(f"Sandbox {sandbox_id} does not exist")
        if time.time() - float(meta.get("last_seen") or 0) > self.idle_ttl_seconds:
            await self.destroy(sandbox_id)
            raise SandboxProvisionError(f"Sandbox {sandbox_id} expired while paused")
        meta["paused"] = False
        self._touch(sandbox_id, meta)
        if meta.get("start_command"):
            await self.exec(sandbox_id, meta["start_command"], background=True)
        logger.info("Local sandbox %s resumed", sandbox_id)
        return meta["url"]

    async def destroy(self, sandbox_id: str) -> None:
        proc = self._processes.pop(sandbox_id, None)
        if proc is not None:
            await self._kill(proc)
        self._ports.pop(sandbox_id, None)
        shutil.rmtree(self._dir(sandbox_id), ignore_errors=True)

    async def reap_idle(self) -> int:
        if not self.root.exists():
            return 0
        reaped = 0
        cutoff = time.time() - self.idle_ttl_seconds
        for d in self.root.iterdir():
            meta = _read_json(d / META_FILE) if d.is_dir() else None
            if meta and float(meta.get("last_seen") or 0) < cutoff:
                await self.destroy(d.name)
                reaped += 1
        return reaped

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, SIGKILL after a grace period, then reap."""
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await proc.wait()


class HttpSandboxProvider:
    """
    Remote provider:
      POST   /sandboxes                 {files, start_command, port} -> {id, url}
      POST   /sandboxes/{id}/exec       {command, background}        -> {output}
      GET    /sandboxes/{id}                                          -> {alive, last_seen}
      PUT    /sandboxes/{id}/files      {files, deleted}
      POST   /sandboxes/{id}/pause
      POST   /sandboxes/{id}/resume                                  -> {url}
      DELETE /sandboxes/{id}
    """

    def __init__(self, base_url: str = SANDBOX_API_URL, api_key: str = SANDBOX_API_KEY, timeout: float = 60.0):
        if not base_url:
            raise RuntimeError("SANDBOX_API_URL not configured (.env).")
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), headers=headers, timeout=timeout)

    async def create(
        self,
        files: Dict[str, str],
        start_command: Optional[str] = None,
        port: Optional[int] = None,
    ) -> Tuple[str, str]:
        resp = await self._client.post(
            "/sandboxes",
            json={"files": files, "start_command": start_command, "port": port},
        )
        resp.raise_for_status()
        data = resp.json()
        return data["id"], data["url"]

    async def exec(self, sandbox_id: str, command: str, background: bool = False) -> str:
        resp = await self._client.post(
            f"/sandboxes/{sandbox_id}/exec",
            json={"command": command, "background": background},
            timeout=SANDBOX_COMMAND_TIMEOUT_SECONDS,
        )
        resp.raise_for_status()
        return resp.json().get("output") or ""

    async def probe(self, sandbox_id: str) -> ProbeResult:
        resp = await self._client.get(f"/sandboxes/{sandbox_id}")
        if resp.status_code in (404, 410):
            return ProbeResult(alive=False)
        resp.raise_for_status()
        data = resp.json()
        return ProbeResult(alive=bool(data.get("alive")), last_seen=data.get("last_seen"))

    async def push_files(
        self,
        sandbox_id: str,
        files: Dict[str, str],
        deleted: Iterable[str] = (),
    ) -> None:
        resp = await self._client.put(
            f"/sandboxes/{sandbox_id}/files",
            json={"files": files, "deleted": list(deleted)},
        )
        resp.raise_for_status()

    async def pause(self, sandbox_id: str) -> None:
        resp = await self._client.post(f"/sandboxes/{sandbox_id}/pause")
        resp.raise_for_status()

    async def resume(self, sandbox_id: str) -> str:
        resp = await self._client.post(f"/sandboxes/{sandbox_id}/resume")
        resp.raise_for_status()
        return resp.json()["url"]

    async def destroy(self, sandbox_id: str) -> None:
        resp = await self._client.delete(f"/sandboxes/{sandbox_id}")
        if resp.status_code not in (404, 410):
            resp.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


def build_sandbox_provider() -> SandboxProvider:
    if SANDBOX_PROVIDER == "http":
        return HttpSandboxProvider()
    if SANDBOX_PROVIDER == "local":
        return LocalSandboxProvider()
    raise RuntimeError(f"Unknown SANDBOX_PROVIDER: {SANDBOX_PROVIDER}")
