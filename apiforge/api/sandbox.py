# FILE: apiforge/api/sandbox.py
# =========================================================
# Preview sandbox: ensure / keepalive / pause / resume / exec / restart / destroy
# =========================================================

import logging

from fastapi import APIRouter, Depends

from apiforge.api.deps import get_owned_project, get_sandboxes
from apiforge.models.project import Project
from apiforge.schemas.sandbox import ExecRequest, ExecResponse
from apiforge.services.sandbox_manager import SandboxManager, sandbox_to_dict

router = APIRouter(prefix="/api", tags=["sandbox"])
logger = logging.getLogger("apiforge.sandbox.api")


def _restored_collector(holder: dict):
    def _on_restored(url: str) -> None:
        holder["restored_url"] = url
    return _on_restored


@router.get("/projects/{pid}/sandbox")
async def get_sandbox(
        p: Project = Depends(get_owned_project),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    return sandbox_to_dict(await sandboxes.get(p.id))


@router.post("/projects/{pid}/sandbox/ensure")
async def ensure_sandbox(
        p: Project = Depends(get_owned_project),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    """Provision or revive the preview. restored_url is set when a new sandbox replaced an expired one."""
    holder = {"restored_url": None}
    sb = await sandboxes.ensure_alive(p.id, on_restored=_restored_collector(holder))
    return {**sandbox_to_dict(sb), **holder}


@router.post("/projects/{pid}/sandbox/keepalive")
async def keepalive(
        p: Project = Depends(get_owned_project),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    return await sandboxes.keepalive(p.id)


@router.post("/projects/{pid}/sandbox/pause")
async def pause(
        p: Project = Depends(get_owned_project),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    return sandbox_to_dict(await sandboxes.pause(p.id))


@router.post("/projects/{pid}/sandbox/resume")
async def resume(
        p: Project = Depends(get_owned_project),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    holder = {"restored_url": None}
    sb = await sandboxes.resume(p.id, on_restored=_restored_collector(holder))
    return {**sandbox_to_dict(sb), **holder}


@router.post("/projects/{pid}/sandbox/exec", response_model=ExecResponse)
async def exec_command(
        data: ExecRequest,
        p: Project = Depends(get_owned_project),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    return await sandboxes.exec(p.id, data.command)


@router.post("/projects/{pid}/sandbox/restart")
async def restart(
        p: Project = Depends(get_owned_project),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    holder = {"restored_url": None}
    sb = await sandboxes.manual_restart(p.id, on_restored=_restored_collector(holder))
    logger.info("Sandbox for project %s restarted by user", p.id)
    return {**sandbox_to_dict(sb), **holder}


@router.delete("/projects/{pid}/sandbox")
async def destroy(
        p: Project = Depends(get_owned_project),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    await sandboxes.destroy(p.id)
    return {"ok": True}
