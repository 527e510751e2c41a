# =========================================================
# FILE: /apiforge/services/event_service.py
# =========================================================

from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from apiforge.core.config import JOB_EVENT_LIMIT
from apiforge.models.job_event import JobEvent


def event_to_dict(e: JobEvent) -> Dict[str, Any]:
    return {
        "id": f"{e.job_id}:{e.seq}",
        "seq": e.seq,
        "ts": e.created_at.isoformat() if e.created_at else None,
        "type": e.event_type,
        "stage": e.stage,
        "file_path": e.file_path,
        "file_status": e.file_status,
        "relevance": e.relevance,
        "message": e.message or "",
        "payload": e.payload or {},
    }


async def next_seq(db: AsyncSession, job_id: str) -> int:
    current = (
        await db.execute(select(func.max(JobEvent.seq)).where(JobEvent.job_id == job_id))
    ).scalar_one_or_none()
    return int(current or 0) + 1


def append_event(
    db: AsyncSession,
    job_id: str,
    seq: int,
    event_type: str,
    *,
    stage: Optional[str] = None,
    file_path: Optional[str] = None,
    file_status: Optional[str] = None,
    relevance: Optional[float] = None,
    message: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> JobEvent:
    """Adds the event to the session; the caller commits together with its own state change."""
    event = JobEvent(
        job_id=job_id,
        seq=seq,
        event_type=event_type,
        stage=stage,
        file_path=file_path,
        file_status=file_status,
        relevance=relevance,
        message=message,
        payload=payload,
    )
    db.add(event)
    return event


async def list_events(
    db: AsyncSession,
    job_id: str,
    after: Optional[int] = None,
    limit: int = JOB_EVENT_LIMIT,
) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    """Events with seq > after, plus the cursor to pass next time."""
    q = select(JobEvent).where(JobEvent.job_id == job_id)
    if after:
        q = q.where(JobEvent.seq > after)
    q = q.order_by(JobEvent.seq.asc()).limit(limit)

    rows = (await db.execute(q)).scalars().all()
    if not rows:
        return [], after
    return [event_to_dict(e) for e in rows], rows[-1].seq
