# =========================================================
# FILE: apiforge/api/modifications.py
# =========================================================

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.api.deps import get_current_user, get_owned_project, get_sandboxes
from apiforge.core.database import get_db
from apiforge.core.enums import ModificationStatus
from apiforge.models.code_modification import CodeModification
from apiforge.models.project import Project
from apiforge.schemas.modifications import (
    ApplyMultipleRequest,
    ApplyMultipleResponse,
    ApplyOutcomeResponse,
    ModificationResponse,
)
from apiforge.services import modification_ledger as ledger
from apiforge.services.sandbox_manager import SandboxManager

router = APIRouter(prefix="/api", tags=["modifications"])


async def _owned_modification(db: AsyncSession, mid: str, user_id: str) -> CodeModification:
    m = (
        await db.execute(
            select(CodeModification)
            .join(Project, Project.id == CodeModification.project_id)
            .where(CodeModification.id == mid, Project.user_id == user_id)
        )
    ).scalar_one_or_none()
    if not m:
        raise HTTPException(status_code=404, detail="Modification not found")
    return m


@router.get("/projects/{pid}/modifications")
async def list_modifications(
        message_id: Optional[str] = None,
        status: Optional[ModificationStatus] = None,
        grouped: bool = False,
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    mods = await ledger.list_modifications(db, p.id, message_id=message_id, status=status)
    if grouped:
        return {"files": ledger.group_by_file(mods), "total": len(mods)}
    return [ModificationResponse(**ledger.modification_to_dict(m)) for m in mods]


@router.get("/modifications/{mid}", response_model=ModificationResponse)
async def get_modification(
        mid: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    m = await _owned_modification(db, mid, user["id"])
    return ModificationResponse(**ledger.modification_to_dict(m))


@router.post("/modifications/{mid}/apply", response_model=ApplyOutcomeResponse)
async def apply_modification(
        mid: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    """Apply one proposal. Idempotent; 409 when the file moved on since it was proposed."""
    await _owned_modification(db, mid, user["id"])
    outcome = await ledger.apply(db, mid, sandboxes=sandboxes)
    return ApplyOutcomeResponse(**outcome.to_dict())


@router.post("/modifications/{mid}/reject", response_model=ApplyOutcomeResponse)
async def reject_modification(
        mid: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    await _owned_modification(db, mid, user["id"])
    outcome = await ledger.reject(db, mid)
    return ApplyOutcomeResponse(**outcome.to_dict())


@router.post("/projects/{pid}/modifications/apply", response_model=ApplyMultipleResponse)
async def apply_multiple(
        data: ApplyMultipleRequest,
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
        sandboxes: SandboxManager = Depends(get_sandboxes),
):
    # ids outside this project are reported as not_found, never applied
    owned = set(
        (
            await db.execute(
                select(CodeModification.id).where(
                    CodeModification.project_id == p.id,
                    CodeModification.id.in_(data.ids or [""]),
                )
            )
        ).scalars()
    )

    results = []
    for mid in data.ids:
        if mid not in owned:
            results.append(ledger.ApplyOutcome(mid, ledger.NOT_FOUND, message="Modification not found"))
            continue
        results.extend(await ledger.apply_multiple(db, [mid], sandboxes=sandboxes))

    applied = sum(1 for r in results if r.ok)
    return ApplyMultipleResponse(
        results=[ApplyOutcomeResponse(**r.to_dict()) for r in results],
        applied=applied,
        failed=len(results) - applied,
    )
