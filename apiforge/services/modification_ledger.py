# FILE: apiforge/services/modification_ledger.py
"""
Reviewable code modifications: PROPOSE first, APPLY or REJECT on confirm.

apply/reject on one id are serialized (in-process lock + conditional UPDATE
on status='pending'), so exactly one terminal effect wins. Apply wins over a
racing reject; reject after apply is a no-op. Records are never deleted.
"""

import asyncio
import logging
import uuid
import weakref
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.core.enums import ModificationStatus, ModificationType, exhaustive
from apiforge.core.errors import ApiForgeError, ModificationConflict, NotFoundError
from apiforge.models.code_modification import CodeModification
from apiforge.models.types import utcnow
from apiforge.services.version_store import get_latest
from apiforge.services.workspace_service import (
    TreeChange,
    load_tree,
    normalize_path,
    push_to_sandbox,
    stage_files,
)

if TYPE_CHECKING:
    from apiforge.services.sandbox_manager import SandboxManager

logger = logging.getLogger("apiforge.modifications")

# apply outcomes
APPLIED = "applied"
ALREADY_APPLIED = "already_applied"
REJECTED = "rejected"
ALREADY_REJECTED = "already_rejected"
CONFLICT = "conflict"
NOT_FOUND = "not_found"
ERROR = "error"

# held only while an apply or reject on the id is running or waiting
_MOD_LOCKS: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _ensure_lock(modification_id: str) -> asyncio.Lock:
    lock = _MOD_LOCKS.get(modification_id)
    if lock is None:
        lock = asyncio.Lock()
        _MOD_LOCKS[modification_id] = lock
    return lock


@dataclass
class ProposedModification:
    file_path: str
    modification_type: ModificationType
    new_content: Optional[str] = None
    old_content: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None
    reason: Optional[str] = None


@dataclass
class ApplyOutcome:
    modification_id: str
    outcome: str
    file_path: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (APPLIED, ALREADY_APPLIED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.modification_id,
            "outcome": self.outcome,
            "ok": self.ok,
            "file_path": self.file_path,
            "message": self.message,
        }


def modification_to_dict(m: CodeModification) -> Dict[str, Any]:
    return {
        "id": m.id,
        "project_id": m.project_id,
        "message_id": m.message_id,
        "file_path": m.file_path,
        "old_content": m.old_content,
        "new_content": m.new_content,
        "line_start": m.line_start,
        "line_end": m.line_end,
        "modification_type": m.modification_type,
        "reason": m.reason,
        "status": m.status,
        "applied": m.applied,
        "base_version_number": m.base_version_number,
        "created_at": m.created_at.isoformat() if m.created_at else None,
        "applied_at": m.applied_at.isoformat() if m.applied_at else None,
    }


async def propose(
    db: AsyncSession,
    project_id: str,
    message_id: str,
    modifications: Iterable[ProposedModification],
    base_version_number: Optional[int] = None,
) -> List[CodeModification]:
    """Insert as pending. Caller commits."""
    records = []
    for p in modifications:
        m = CodeModification(
            id=str(uuid.uuid4()),
            project_id=project_id,
            message_id=message_id,
            file_path=normalize_path(p.file_path),
            old_content=p.old_content,
            new_content=p.new_content,
            line_start=p.line_start,
            line_end=p.line_end,
            modification_type=ModificationType(p.modification_type).value,
            reason=p.reason,
            status=ModificationStatus.PENDING.value,
            base_version_number=base_version_number,
        )
        db.add(m)
        records.append(m)
    await db.flush()
    return records


# ---------------------------------------------------------
# write planning per modification type
# ---------------------------------------------------------

def _plan_edit(m: CodeModification) -> TreeChange:
    return TreeChange(written={m.file_path: m.new_content or ""})


def _plan_create(m: CodeModification) -> TreeChange:
    return TreeChange(written={m.file_path: m.new_content or ""})


def _plan_delete(m: CodeModification) -> TreeChange:
    return TreeChange(deleted=[m.file_path])


_PLANNERS = exhaustive(ModificationType, {
    ModificationType.EDIT: _plan_edit,
    ModificationType.CREATE: _plan_create,
    ModificationType.DELETE: _plan_delete,
})


async def _check_stale(db: AsyncSession, m: CodeModification) -> Optional[str]:
    latest = await get_latest(db, m.project_id)
    if m.base_version_number is not None and latest is not None and latest.version_number > m.base_version_number:
        return f"based on version {m.base_version_number}, latest is {latest.version_number}"

    tree = await load_tree(db, m.project_id)
    current = tree.get(m.file_path)
    if m.old_content is None:
        if current is not None and current != (m.new_content or ""):
            return "file already exists with different content"
    elif current != m.old_content:
        return "file content changed"
    return None


async def _get(db: AsyncSession, modification_id: str) -> CodeModification:
    m = await db.get(CodeModification, modification_id, populate_existing=True)
    if m is None:
        raise NotFoundError(f"Modification {modification_id} not found")
    return m


async def apply(
    db: AsyncSession,
    modification_id: str,
    sandboxes: Optional["SandboxManager"] = None,
) -> ApplyOutcome:
    """
    Idempotent. Writes through the workspace path and the live sandbox, then
    marks applied. Raises ModificationConflict (and records status=conflict)
    when the target file moved on since the proposal.
    """
    async with _ensure_lock(modification_id):
        m = await _get(db, modification_id)
        status = ModificationStatus(m.status)

        if status == ModificationStatus.APPLIED:
            return ApplyOutcome(m.id, ALREADY_APPLIED, m.file_path, "Changes already applied")
        if status == ModificationStatus.REJECTED:
            return ApplyOutcome(m.id, REJECTED, m.file_path, "Modification was rejected")
        if status == ModificationStatus.CONFLICT:
            raise ModificationConflict(m.id, m.file_path, "flagged as stale")

        reason = await _check_stale(db, m)
        if reason:
            await db.execute(
                update(CodeModification)
                .where(CodeModification.id == m.id, CodeModification.status == ModificationStatus.PENDING.value)
                .values(status=ModificationStatus.CONFLICT.value, updated_at=utcnow())
            )
            await db.commit()
            logger.info("Modification %s on %s conflicts: %s", m.id, m.file_path, reason)
            raise ModificationConflict(m.id, m.file_path, reason)

        planned = _PLANNERS[ModificationType(m.modification_type)](m)
        try:
            claimed = await db.execute(
                update(CodeModification)
                .where(CodeModification.id == m.id, CodeModification.status == ModificationStatus.PENDING.value)
                .values(status=ModificationStatus.APPLIED.value, applied_at=utcnow(), updated_at=utcnow())
            )
            if not claimed.rowcount:
                # lost to a writer in another process
                await db.rollback()
                m = await _get(db, modification_id)
                return ApplyOutcome(m.id, _settled_outcome(m), m.file_path, "Already settled")

            change = await stage_files(db, m.project_id, planned.written, planned.deleted)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info("Modification %s applied to %s", m.id, m.file_path)

    await push_to_sandbox(m.project_id, change, sandboxes)
    return ApplyOutcome(m.id, APPLIED, m.file_path, "Applied")


def _settled_outcome(m: CodeModification) -> str:
    return {
        ModificationStatus.APPLIED.value: ALREADY_APPLIED,
        ModificationStatus.REJECTED.value: REJECTED,
        ModificationStatus.CONFLICT.value: CONFLICT,
    }.get(m.status, ERROR)


async def apply_multiple(
    db: AsyncSession,
    modification_ids: List[str],
    sandboxes: Optional["SandboxManager"] = None,
) -> List[ApplyOutcome]:
    """Per-id outcomes; one bad modification never blocks the rest."""
    results: List[ApplyOutcome] = []
    for mid in modification_ids:
        try:
            results.append(await apply(db, mid, sandboxes=sandboxes))
        except NotFoundError as e:
            results.append(ApplyOutcome(mid, NOT_FOUND, message=e.message))
        except ModificationConflict as e:
            results.append(ApplyOutcome(mid, CONFLICT, e.file_path, e.message))
        except ApiForgeError as e:
            results.append(ApplyOutcome(mid, ERROR, message=e.message))
        except Exception as e:
            logger.exception("Applying modification %s failed", mid)
            await db.rollback()
            results.append(ApplyOutcome(mid, ERROR, message=str(e)))
    return results


async def reject(db: AsyncSession, modification_id: str) -> ApplyOutcome:
    """Idempotent. After apply it is a no-op: apply wins, nothing is reverted."""
    async with _ensure_lock(modification_id):
        m = await _get(db, modification_id)
        status = ModificationStatus(m.status)

        if status == ModificationStatus.APPLIED:
            return ApplyOutcome(m.id, ALREADY_APPLIED, m.file_path, "Already applied; reject ignored")
        if status == ModificationStatus.REJECTED:
            return ApplyOutcome(m.id, ALREADY_REJECTED, m.file_path, "Already rejected")

        # pending or conflict
        result = await db.execute(
            update(CodeModification)
            .where(
                CodeModification.id == m.id,
                CodeModification.status.in_([
                    ModificationStatus.PENDING.value,
                    ModificationStatus.CONFLICT.value,
                ]),
            )
            .values(status=ModificationStatus.REJECTED.value, updated_at=utcnow())
        )
        await db.commit()
        if not result.rowcount:
            m = await _get(db, modification_id)
            return ApplyOutcome(m.id, _settled_outcome(m), m.file_path, "Already settled")

        logger.info("Modification %s on %s rejected", m.id, m.file_path)
        return ApplyOutcome(m.id, REJECTED, m.file_path, "Rejected")


async def get_modification(db: AsyncSession, modification_id: str) -> CodeModification:
    return await _get(db, modification_id)


async def list_modifications(
    db: AsyncSession,
    project_id: str,
    message_id: Optional[str] = None,
    status: Optional[ModificationStatus] = None,
) -> List[CodeModification]:
    q = select(CodeModification).where(CodeModification.project_id == project_id)
    if message_id:
        q = q.where(CodeModification.message_id == message_id)
    if status is not None:
        q = q.where(CodeModification.status == ModificationStatus(status).value)
    q = q.order_by(CodeModification.created_at.asc(), CodeModification.file_path.asc())
    return list((await db.execute(q)).scalars())


def group_by_file(modifications: Iterable[CodeModification]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for m in modifications:
        grouped.setdefault(m.file_path, []).append(modification_to_dict(m))
    return dict(sorted(grouped.items()))


async def count_pending(db: AsyncSession, project_id: str) -> int:
    return int(
        (
            await db.execute(
                select(func.count(CodeModification.id)).where(
                    CodeModification.project_id == project_id,
                    CodeModification.status == ModificationStatus.PENDING.value,
                )
            )
        ).scalar_one()
    )


async def materialize(db: AsyncSession, project_id: str) -> Dict[str, str]:
    """
    Latest completed version with the modifications applied on top of it.
    Used to rebuild a sandbox from durable state only.
    """
    latest = await get_latest(db, project_id)
    if latest is None:
        return {}

    files = dict(latest.files or {})
    applied = (
        await db.execute(
            select(CodeModification)
            .where(
                CodeModification.project_id == project_id,
                CodeModification.status == ModificationStatus.APPLIED.value,
                CodeModification.base_version_number == latest.version_number,
            )
            .order_by(CodeModification.applied_at.asc())
        )
    ).scalars()
    for m in applied:
        planned = _PLANNERS[ModificationType(m.modification_type)](m)
        files.update(planned.written)
        for path in planned.deleted:
            files.pop(path, None)
    return files
