from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import Job
from jobengine.domain.errors import ClaimLostError, JobNotFoundError
from jobengine.domain.states import JobStatus

async def update_progress(
    session: AsyncSession,
    job_id: UUID,
    claim_token: UUID,
    percent: int,
    message: Optional[str] = None,
) -> int:
    """
    Persists progress for a running job and doubles as its heartbeat.
    Percent is clamped to 0..100. Returns the stored value.
    Raises ClaimLostError if the caller no longer owns the job.
    """
    now = datetime.now(timezone.utc)
    percent = max(0, min(100, int(percent)))

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.claim_token == claim_token)
        .values(progress=percent, progress_message=message, heartbeat_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise ClaimLostError(f"Job {job_id} is no longer held by claim {claim_token}")
    return percent

async def heartbeat(session: AsyncSession, job_id: UUID, claim_token: UUID) -> datetime:
    """Refreshes heartbeat_at without touching progress."""
    now = datetime.now(timezone.utc)
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.claim_token == claim_token)
        .values(heartbeat_at=now)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise ClaimLostError(f"Job {job_id} is no longer held by claim {claim_token}")
    return now

async def save_checkpoint(
    session: AsyncSession,
    job_id: UUID,
    claim_token: UUID,
    checkpoint: Any,
) -> dict[str, Any]:
    """Stores `checkpoint` under metadata["checkpoint"]; other keys are kept."""
    row = (await session.execute(
        select(Job.meta, Job.status, Job.claim_token).where(Job.id == job_id)
    )).one_or_none()
    if row is None:
        raise JobNotFoundError(job_id)
    if row.status != JobStatus.RUNNING or row.claim_token != claim_token:
        raise ClaimLostError(f"Job {job_id} is no longer held by claim {claim_token}")

    meta = dict(row.meta or {})
    meta["checkpoint"] = checkpoint
    now = datetime.now(timezone.utc)

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.claim_token == claim_token)
        .values({Job.meta: meta, Job.heartbeat_at: now, Job.updated_at: now})
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise ClaimLostError(f"Job {job_id} is no longer held by claim {claim_token}")
    return meta

async def is_cancel_requested(session: AsyncSession, job_id: UUID) -> bool:
    value = await session.scalar(select(Job.cancel_requested).where(Job.id == job_id))
    return bool(value)
