# FILE: apiforge/api/versions.py

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.api.deps import get_owned_project
from apiforge.core.database import get_db
from apiforge.models.project import Project
from apiforge.services.version_store import (
    compare_versions,
    diff_against_previous,
    get_version,
    list_versions,
    version_to_dict,
)

router = APIRouter(prefix="/api", tags=["versions"])


@router.get("/projects/{pid}/versions")
async def versions(
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
) -> List[dict]:
    return [version_to_dict(v) for v in await list_versions(db, p.id)]


@router.get("/projects/{pid}/versions/compare")
async def compare(
        from_number: int = Query(..., alias="from"),
        to_number: int = Query(..., alias="to"),
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    older = await get_version(db, p.id, from_number)
    newer = await get_version(db, p.id, to_number)
    return compare_versions(older, newer)


@router.get("/projects/{pid}/versions/{number}")
async def version(
        number: int,
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    return version_to_dict(await get_version(db, p.id, number), include_files=True)


@router.get("/projects/{pid}/versions/{number}/diff")
async def version_diff(
        number: int,
        p: Project = Depends(get_owned_project),
        db: AsyncSession = Depends(get_db),
):
    v = await get_version(db, p.id, number)
    return (await diff_against_previous(db, v)).to_dict()
