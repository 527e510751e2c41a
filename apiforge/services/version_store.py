# FILE: apiforge/services/version_store.py
"""
Append-only version log per project.

version_number = max + 1, allocated only when a generation completes, inside
the same transaction that writes the file map and the working tree. The
(project_id, version_number) unique constraint backs the per-project lock.
"""

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.core.enums import CommandType, ModificationStatus, VersionStatus
from apiforge.core.errors import NotFoundError, StaleVersionReference
from apiforge.models.code_modification import CodeModification
from apiforge.models.version import Version
from apiforge.services.workspace_service import TreeChange, load_tree, stage_tree

logger = logging.getLogger("apiforge.versions")

FILE_NEW = "new"
FILE_MODIFIED = "modified"
FILE_UNCHANGED = "unchanged"

APPEND_MAX_ATTEMPTS = 3

# serializes number allocation within this process
_APPEND_LOCKS: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _ensure_lock(project_id: str) -> asyncio.Lock:
    lock = _APPEND_LOCKS.get(project_id)
    if lock is None:
        lock = asyncio.Lock()
        _APPEND_LOCKS[project_id] = lock
    return lock


@dataclass
class VersionDiff:
    version_number: int
    previous_number: Optional[int]
    files: Dict[str, str] = field(default_factory=dict)  # path -> new | modified | unchanged
    removed: List[str] = field(default_factory=list)

    def paths_with(self, status: str) -> List[str]:
        return sorted(p for p, s in self.files.items() if s == status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version_number": self.version_number,
            "previous_version_number": self.previous_number,
            "files": dict(sorted(self.files.items())),
            "new": self.paths_with(FILE_NEW),
            "modified": self.paths_with(FILE_MODIFIED),
            "unchanged": self.paths_with(FILE_UNCHANGED),
            "removed": sorted(self.removed),
        }


def version_to_dict(v: Version, include_files: bool = False) -> Dict[str, Any]:
    data = {
        "id": v.id,
        "project_id": v.project_id,
        "version_number": v.version_number,
        "name": v.name,
        "description": v.description,
        "command_type": v.command_type,
        "status": v.status,
        "parent_version_id": v.parent_version_id,
        "job_id": v.job_id,
        "file_count": len(v.files or {}),
        "created_at": v.created_at.isoformat() if v.created_at else None,
    }
    if include_files:
        data["files"] = dict(v.files or {})
    return data


async def _max_number(db: AsyncSession, project_id: str) -> int:
    current = (
        await db.execute(select(func.max(Version.version_number)).where(Version.project_id == project_id))
    ).scalar_one_or_none()
    return int(current or 0)


async def append_version(
    db: AsyncSession,
    project_id: str,
    files: Dict[str, str],
    metadata: Optional[Dict[str, Any]] = None,
    claim: Optional[Callable[[AsyncSession, str], Awaitable[None]]] = None,
) -> Tuple[Version, TreeChange]:
    """
    Record ``files`` as the next version and make them the working tree.
    Pending modifications proposed against older versions are flagged as
    conflicts in the same transaction. Commits; on failure nothing is recorded.

    ``claim(db, version_id)`` runs first inside that transaction. The job
    engine uses it to move its job to `complete`; raising from it rolls the
    whole fold back, so no number is consumed.
    """
    meta = metadata or {}
    command_type = CommandType(meta.get("command_type") or CommandType.CREATE)

    async with _ensure_lock(project_id):
        for attempt in range(1, APPEND_MAX_ATTEMPTS + 1):
            version_id = str(uuid.uuid4())
            try:
                if claim is not None:
                    await claim(db, version_id)

                latest = await get_latest(db, project_id)
                number = await _max_number(db, project_id) + 1

                version = Version(
                    id=version_id,
                    project_id=project_id,
                    version_number=number,
                    name=meta.get("name") or f"Version {number}",
                    description=meta.get("description") or "",
                    command_type=command_type.value,
                    files=dict(files),
                    status=VersionStatus.COMPLETED.value,
                    parent_version_id=latest.id if latest else None,
                    job_id=meta.get("job_id"),
                )
                db.add(version)
                await db.flush()

                change = await stage_tree(db, project_id, files)
                stale = await _flag_superseded_modifications(db, project_id, number)

                await db.commit()
            except IntegrityError:
                # another process took this number
                await db.rollback()
                if attempt == APPEND_MAX_ATTEMPTS:
                    raise
                logger.warning("Version number race on project %s, retrying", project_id)
                continue
            except Exception:
                await db.rollback()
                raise

            logger.info(
                "Project %s: version %s recorded (%s files, %s stale modifications)",
                project_id, number, len(files), stale,
            )
            return version, change

    raise RuntimeError("unreachable")


async def _flag_superseded_modifications(db: AsyncSession, project_id: str, new_number: int) -> int:
    result = await db.execute(
        update(CodeModification)
        .where(
            CodeModification.project_id == project_id,
            CodeModification.status == ModificationStatus.PENDING.value,
            CodeModification.base_version_number < new_number,
        )
        .values(status=ModificationStatus.CONFLICT.value)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def list_versions(db: AsyncSession, project_id: str) -> List[Version]:
    return list(
        (
            await db.execute(
                select(Version)
                .where(Version.project_id == project_id)
                .order_by(Version.version_number.asc())
            )
        ).scalars()
    )


async def get_version(db: AsyncSession, project_id: str, version_number: int) -> Version:
    v = (
        await db.execute(
            select(Version).where(
                Version.project_id == project_id,
                Version.version_number == version_number,
            )
        )
    ).scalar_one_or_none()
    if v is None:
        raise NotFoundError(f"Version {version_number} not found")
    return v


async def get_latest(db: AsyncSession, project_id: str) -> Optional[Version]:
    """Latest completed version, or None for a project without one."""
    return (
        await db.execute(
            select(Version)
            .where(
                Version.project_id == project_id,
                Version.status == VersionStatus.COMPLETED.value,
            )
            .order_by(Version.version_number.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


async def get_previous(db: AsyncSession, version: Version) -> Optional[Version]:
    return (
        await db.execute(
            select(Version)
            .where(
                Version.project_id == version.project_id,
                Version.version_number < version.version_number,
            )
            .order_by(Version.version_number.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


async def require_latest(db: AsyncSession, project_id: str, version_number: int) -> Version:
    latest = await get_latest(db, project_id)
    if latest is None or latest.version_number != version_number:
        raise StaleVersionReference(project_id, version_number, latest.version_number if latest else None)
    return latest


def diff_files(current: Dict[str, str], previous: Optional[Dict[str, str]]) -> Tuple[Dict[str, str], List[str]]:
    previous = previous or {}
    statuses: Dict[str, str] = {}
    for path, content in current.items():
        if path not in previous:
            statuses[path] = FILE_NEW
        elif previous[path] != content:
            statuses[path] = FILE_MODIFIED
        else:
            statuses[path] = FILE_UNCHANGED
    removed = [p for p in previous if p not in current]
    return statuses, removed


async def diff_against_previous(db: AsyncSession, version: Version) -> VersionDiff:
    """Per-file status against the immediately preceding version_number. Derived, never stored."""
    previous = await get_previous(db, version)
    statuses, removed = diff_files(version.files or {}, previous.files if previous else None)
    return VersionDiff(
        version_number=version.version_number,
        previous_number=previous.version_number if previous else None,
        files=statuses,
        removed=removed,
    )


def compare_versions(older: Version, newer: Version) -> Dict[str, Any]:
    statuses, removed = diff_files(newer.files or {}, older.files or {})
    added = sorted(p for p, s in statuses.items() if s == FILE_NEW)
    modified = sorted(p for p, s in statuses.items() if s == FILE_MODIFIED)
    unchanged = sorted(p for p, s in statuses.items() if s == FILE_UNCHANGED)
    return {
        "from": older.version_number,
        "to": newer.version_number,
        "added": added,
        "modified": modified,
        "deleted": sorted(removed),
        "unchanged": unchanged,
        "summary": f"{len(added)} added, {len(modified)} modified, {len(removed)} deleted",
    }


async def export_snapshot(db: AsyncSession, project_id: str) -> Dict[str, str]:
    """Current working tree as a flat path -> content map."""
    return dict(sorted((await load_tree(db, project_id)).items()))
