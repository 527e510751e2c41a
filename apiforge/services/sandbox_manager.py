# FILE: apiforge/services/sandbox_manager.py
"""
Sandbox lifecycle per project:

    absent -> provisioning -> alive -> stale -> restoring -> alive
                                                restoring -> failed
                              alive <-> paused   (resume falls back to restoring)

Reactive only: callers (the client's keepalive/visibility timer) drive every
probe. One manager instance lives on app.state and holds the provider; each
project gets its own lock, so at most one sandbox is ever provisioned per
project. Restores always rebuild from the latest completed version (plus
modifications applied on top of it), never from the live sandbox filesystem.
"""

import asyncio
import inspect
import logging
import uuid
import weakref
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

from sqlalchemy import select

from apiforge.core.config import SANDBOX_KEEPALIVE_INTERVAL_SECONDS
from apiforge.core.database import SessionLocal
from apiforge.core.enums import Framework, SandboxState, exhaustive
from apiforge.core.errors import (
    NotFoundError,
    SandboxCommandError,
    SandboxNotRunning,
    SandboxProvisionError,
    SandboxRestoreError,
)
from apiforge.core.retry import SANDBOX_RETRY, RetryPolicy, retry_async
from apiforge.models.project import Project
from apiforge.models.sandbox import Sandbox
from apiforge.models.types import utcnow
from apiforge.services.modification_ledger import materialize
from apiforge.services.sandbox_provider import SandboxProvider

logger = logging.getLogger("apiforge.sandbox")

RestoredCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class SandboxRuntime:
    port: int
    start_command: str


FRAMEWORK_RUNTIME = exhaustive(Framework, {
    Framework.FASTAPI: SandboxRuntime(
        8000, "pip install -q -r requirements.txt && uvicorn main:app --host 0.0.0.0 --port ${PORT:-8000}"
    ),
    Framework.FLASK: SandboxRuntime(
        5000, "pip install -q -r requirements.txt && flask --app app run --host 0.0.0.0 --port ${PORT:-5000}"
    ),
    Framework.EXPRESS: SandboxRuntime(3000, "npm install --silent && npm start"),
    Framework.NEXTJS: SandboxRuntime(3000, "npm install --silent && npm run dev -- -p ${PORT:-3000}"),
    Framework.REACT: SandboxRuntime(3000, "npm install --silent && npm run dev -- --port ${PORT:-3000} --host"),
    Framework.VUE: SandboxRuntime(5173, "npm install --silent && npm run dev -- --port ${PORT:-5173} --host"),
    Framework.ANGULAR: SandboxRuntime(4200, "npm install --silent && npx ng serve --port ${PORT:-4200} --host 0.0.0.0"),
})


def sandbox_to_dict(sb: Optional[Sandbox]) -> Dict[str, Any]:
    if sb is None:
        return {
            "state": SandboxState.ABSENT.value,
            "alive": False,
            "url": None,
            "paused": False,
            "preview_unavailable": False,
            "keepalive_interval_seconds": SANDBOX_KEEPALIVE_INTERVAL_SECONDS,
        }
    return {
        "id": sb.id,
        "project_id": sb.project_id,
        "state": sb.state,
        "alive": sb.alive,
        "url": sb.url,
        "last_keepalive_at": sb.last_keepalive_at.isoformat() if sb.last_keepalive_at else None,
        "last_restored_at": sb.last_restored_at.isoformat() if sb.last_restored_at else None,
        "restore_count": sb.restore_count,
        "error": sb.error,
        "paused": sb.state == SandboxState.PAUSED.value,
        "preview_unavailable": sb.state == SandboxState.FAILED.value,
        "keepalive_interval_seconds": SANDBOX_KEEPALIVE_INTERVAL_SECONDS,
    }


def _retry_any(err: BaseException) -> bool:
    return not isinstance(err, NotFoundError)


class SandboxManager:
    def __init__(
        self,
        provider: SandboxProvider,
        session_factory=SessionLocal,
        retry_policy: RetryPolicy = SANDBOX_RETRY,
    ):
        self.provider = provider
        self._session_factory = session_factory
        self._retry_policy = retry_policy
        # entries vanish once no caller holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        self._handlers = exhaustive(SandboxState, {
            SandboxState.ABSENT: self._from_absent,
            # interrupted mid-provision (api restart): rebuild
            SandboxState.PROVISIONING: self._from_stale,
            SandboxState.ALIVE: self._from_alive,
            SandboxState.PAUSED: self._from_paused,
            SandboxState.STALE: self._from_stale,
            SandboxState.RESTORING: self._from_stale,
            SandboxState.FAILED: self._from_failed,
        })

    def _lock(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[project_id] = lock
        return lock

    # ----------------------------
    # persistence helpers
    # ----------------------------
    async def _load(self, project_id: str) -> Optional[Sandbox]:
        async with self._session_factory() as db:
            return (
                await db.execute(select(Sandbox).where(Sandbox.project_id == project_id))
            ).scalar_one_or_none()

    async def _framework(self, project_id: str) -> Framework:
        async with self._session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise NotFoundError("Project not found")
            return Framework(project.framework)

    async def _save(self, project_id: str, **fields: Any) -> Sandbox:
        async with self._session_factory() as db:
            sb = (
                await db.execute(select(Sandbox).where(Sandbox.project_id == project_id))
            ).scalar_one_or_none()
            if sb is None:
                sb = Sandbox(id=str(uuid.uuid4()), project_id=project_id, restore_count=0)
                db.add(sb)
            for k, v in fields.items():
                setattr(sb, k, v)
            sb.updated_at = utcnow()
            await db.commit()
            return sb

    async def _set_state(self, project_id: str, state: SandboxState, **fields: Any) -> Sandbox:
        logger.info("Sandbox for project %s -> %s", project_id, state.value)
        return await self._save(project_id, state=state.value, **fields)

    async def _materialize(self, project_id: str) -> Dict[str, str]:
        async with self._session_factory() as db:
            return await materialize(db, project_id)

    # ----------------------------
    # provider calls
    # ----------------------------
    async def _create(self, project_id: str, label: str):
        framework = await self._framework(project_id)
        runtime = FRAMEWORK_RUNTIME[framework]
        files = await self._materialize(project_id)

        async def _call():
            return await self.provider.create(files, start_command=runtime.start_command, port=runtime.port)

        return await retry_async(_call, self._retry_policy, label=label, retry_if=_retry_any)

    async def _probe(self, sb: Sandbox) -> bool:
        if not sb.provider_sandbox_id:
            return False
        try:
            result = await retry_async(
                lambda: self.provider.probe(sb.provider_sandbox_id),
                self._retry_policy,
                label=f"probe sandbox {sb.provider_sandbox_id}",
            )
        except Exception as e:
            # unreachable provider for the whole policy: treat as expired, restore takes over
            logger.warning("Probe for sandbox %s failed: %s", sb.provider_sandbox_id, e)
            return False
        return result.alive

    async def _discard(self, provider_sandbox_id: Optional[str]) -> None:
        if not provider_sandbox_id:
            return
        try:
            await self.provider.destroy(provider_sandbox_id)
        except Exception as e:
            # expired environments are often gone already
            logger.warning("Destroying sandbox %s failed: %s", provider_sandbox_id, e)

    # ----------------------------
    # transitions
    # ----------------------------
    async def _provision(self, project_id: str) -> Sandbox:
        await self._set_state(project_id, SandboxState.PROVISIONING, alive=False, error=None)
        try:
            provider_id, url = await self._create(project_id, label=f"provision sandbox for {project_id}")
        except NotFoundError:
            raise
        except Exception as e:
            logger.exception("Provisioning sandbox for project %s failed", project_id)
            await self._set_state(project_id, SandboxState.FAILED, alive=False, error=str(e))
            raise SandboxProvisionError("Preview unavailable: sandbox could not be provisioned.") from e

        return await self._set_state(
            project_id,
            SandboxState.ALIVE,
            alive=True,
            provider_sandbox_id=provider_id,
            url=url,
            last_keepalive_at=utcnow(),
            error=None,
        )

    async def _restore(self, project_id: str, previous: Optional[Sandbox], on_restored: Optional[RestoredCallback]) -> Sandbox:
        await self._set_state(project_id, SandboxState.RESTORING, alive=False)
        await self._discard(previous.provider_sandbox_id if previous else None)

        try:
            provider_id, url = await self._create(project_id, label=f"restore sandbox for {project_id}")
        except NotFoundError:
            raise
        except Exception as e:
            logger.exception("Restoring sandbox for project %s failed", project_id)
            await self._set_state(
                project_id, SandboxState.FAILED, alive=False, provider_sandbox_id=None, error=str(e)
            )
            raise SandboxRestoreError("Preview unavailable: sandbox could not be restored.") from e

        sb = await self._set_state(
            project_id,
            SandboxState.ALIVE,
            alive=True,
            provider_sandbox_id=provider_id,
            url=url,
            last_keepalive_at=utcnow(),
            last_restored_at=utcnow(),
            restore_count=((previous.restore_count or 0) if previous else 0) + 1,
            error=None,
        )
        logger.info("Sandbox for project %s restored at %s", project_id, url)
        await self._notify(on_restored, url)
        return sb

    @staticmethod
    async def _notify(on_restored: Optional[RestoredCallback], url: str) -> None:
        if on_restored is None:
            return
        res = on_restored(url)
        if inspect.isawaitable(res):
            await res

    async def _from_absent(self, project_id, sb, on_restored):
        return await self._provision(project_id)

    async def _from_alive(self, project_id, sb, on_restored):
        if await self._probe(sb):
            return await self._save(project_id, alive=True, last_keepalive_at=utcnow())
        logger.info("Sandbox %s for project %s expired", sb.provider_sandbox_id, project_id)
        sb = await self._set_state(project_id, SandboxState.STALE, alive=False)
        return await self._restore(project_id, sb, on_restored)

    async def _from_paused(self, project_id, sb, on_restored):
        provider_id = sb.provider_sandbox_id
        try:
            # generations may have landed while it was paused
            await self.provider.push_files(provider_id, await self._materialize(project_id))
            url = await retry_async(
                lambda: self.provider.resume(provider_id),
                self._retry_policy,
                label=f"resume sandbox {provider_id}",
            )
        except Exception as e:
            logger.warning("Resuming sandbox %s failed, restoring: %s", provider_id, e)
            return await self._restore(project_id, sb, on_restored)

        resumed = await self._set_state(
            project_id, SandboxState.ALIVE, alive=True, url=url, last_keepalive_at=utcnow(), error=None
        )
        if url != sb.url:
            await self._notify(on_restored, url)
        return resumed

    async def _from_stale(self, project_id, sb, on_restored):
        return await self._restore(project_id, sb, on_restored)

    async def _from_failed(self, project_id, sb, on_restored):
        if sb.restore_count or sb.provider_sandbox_id:
            return await self._restore(project_id, sb, on_restored)
        return await self._provision(project_id)

    # ----------------------------
    # public API
    # ----------------------------
    async def ensure_alive(self, project_id: str, on_restored: Optional[RestoredCallback] = None) -> Sandbox:
        """Idempotent: provision when absent, probe when alive, restore when expired."""
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is None:
                await self._framework(project_id)
            state = SandboxState(sb.state) if sb else SandboxState.ABSENT
            return await self._handlers[state](project_id, sb, on_restored)

    async def keepalive(self, project_id: str) -> Dict[str, Any]:
        """Probe only; never provisions. needs_restart tells the client to call ensure/restart."""
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is not None and sb.state == SandboxState.PAUSED.value:
                return {"alive": False, "needs_restart": False, "paused": True, "sandbox": sandbox_to_dict(sb)}
            if sb is None or sb.state != SandboxState.ALIVE.value:
                return {"alive": False, "needs_restart": True, "paused": False, "sandbox": sandbox_to_dict(sb)}

            if await self._probe(sb):
                sb = await self._save(project_id, alive=True, last_keepalive_at=utcnow())
                return {"alive": True, "needs_restart": False, "paused": False, "sandbox": sandbox_to_dict(sb)}

            sb = await self._set_state(project_id, SandboxState.STALE, alive=False)
            return {"alive": False, "needs_restart": True, "paused": False, "sandbox": sandbox_to_dict(sb)}

    async def manual_restart(self, project_id: str, on_restored: Optional[RestoredCallback] = None) -> Sandbox:
        """User-triggered recovery: restore regardless of current state."""
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is None:
                await self._framework(project_id)
            return await self._restore(project_id, sb, on_restored)

    async def refresh(self, project_id: str, on_restored: Optional[RestoredCallback] = None) -> Optional[Sandbox]:
        """
        After a generation completes: bring the live sandbox up to the latest files.
        ``on_restored`` hears the new url when the sandbox had lapsed and was rebuilt.
        """
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is None or sb.state == SandboxState.ABSENT.value:
                return None
            if sb.state == SandboxState.PAUSED.value:
                # resume pushes the current tree
                return sb
            if sb.state == SandboxState.ALIVE.value and await self._probe(sb):
                files = await self._materialize(project_id)
                try:
                    await self.provider.push_files(sb.provider_sandbox_id, files)
                    return sb
                except Exception as e:
                    logger.warning("Pushing files to sandbox %s failed, restoring: %s", sb.provider_sandbox_id, e)
            return await self._restore(project_id, sb, on_restored)

    async def pause(self, project_id: str) -> Sandbox:
        """Stop the preview server but keep its environment; resuming is cheaper than a restore."""
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is None or sb.state == SandboxState.ABSENT.value:
                raise NotFoundError("No sandbox for this project")
            if sb.state == SandboxState.PAUSED.value:
                return sb
            if sb.state != SandboxState.ALIVE.value or not sb.provider_sandbox_id:
                raise SandboxNotRunning(f"Sandbox is {sb.state}; only a running sandbox can be paused")

            try:
                await self.provider.pause(sb.provider_sandbox_id)
            except Exception as e:
                # most likely expired already; ensure_alive restores it
                logger.warning("Pausing sandbox %s failed: %s", sb.provider_sandbox_id, e)
                return await self._set_state(project_id, SandboxState.STALE, alive=False, error=str(e))
            return await self._set_state(project_id, SandboxState.PAUSED, alive=False)

    async def resume(self, project_id: str, on_restored: Optional[RestoredCallback] = None) -> Sandbox:
        """Start a paused sandbox again, restoring it when the provider lost it. Never provisions."""
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is None or sb.state == SandboxState.ABSENT.value:
                raise NotFoundError("No sandbox for this project")
            return await self._handlers[SandboxState(sb.state)](project_id, sb, on_restored)

    async def exec(self, project_id: str, command: str) -> Dict[str, Any]:
        """Run a shell command in the running sandbox. Not retried."""
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is None or sb.state != SandboxState.ALIVE.value or not sb.provider_sandbox_id:
                raise SandboxNotRunning("Sandbox is not running. Start or resume it first.")
            provider_id = sb.provider_sandbox_id

        logger.info("Running command in sandbox %s (project %s)", provider_id, project_id)
        try:
            output = await self.provider.exec(provider_id, command)
        except asyncio.TimeoutError:
            raise SandboxCommandError("Command timed out", command=command)
        except SandboxProvisionError as e:
            raise SandboxNotRunning(e.message)
        except Exception as e:
            logger.warning("Command in sandbox %s failed: %s", provider_id, e)
            raise SandboxCommandError(f"Command failed: {e}", command=command) from e
        return {"command": command, "output": output}

    async def push_changes(self, project_id: str, written: Dict[str, str], deleted: Iterable[str] = ()) -> None:
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is None or sb.state != SandboxState.ALIVE.value or not sb.provider_sandbox_id:
                return
            try:
                await self.provider.push_files(sb.provider_sandbox_id, written, list(deleted))
            except Exception as e:
                # durable state already has the change; the next ensure_alive rebuilds from it
                logger.warning("Pushing changes to sandbox %s failed: %s", sb.provider_sandbox_id, e)
                await self._set_state(project_id, SandboxState.STALE, alive=False, error=str(e))

    async def destroy(self, project_id: str) -> None:
        async with self._lock(project_id):
            sb = await self._load(project_id)
            if sb is None:
                return
            await self._discard(sb.provider_sandbox_id)
            await self._set_state(project_id, SandboxState.ABSENT, alive=False, provider_sandbox_id=None, url=None)

    async def get(self, project_id: str) -> Optional[Sandbox]:
        return await self._load(project_id)
