from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4
import logging

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import Job, Tenant
from jobengine.domain.errors import ClaimConflict
from jobengine.domain.states import JobStatus
from jobengine.api.v1.metrics import QUEUE_DEPTH, JOB_CLAIM_TOTAL, JOB_START_DELAY

logger = logging.getLogger(__name__)

async def claim_next_job(
    session: AsyncSession,
    worker_id: str,
    tenant_id: Optional[str] = None,
    now: Optional[datetime] = None,
    candidates: int = 10,
) -> Optional[Job]:
    """
    Claims the best eligible pending job for the given worker.

    Order: priority rank ascending (urgent=1 first), then created_at (FIFO).
    Tenants already running `max_inflight` jobs are skipped.

    Correctness does not depend on the SELECT: the claim itself is a
    conditional UPDATE and only one racing worker can see rowcount == 1.
    Losers move on to the next candidate. Caller commits.
    """
    now = now or datetime.now(timezone.utc)

    saturated_tenants = (
        select(Job.tenant_id)
        .join(Tenant, Tenant.id == Job.tenant_id)
        .where(Job.status == JobStatus.RUNNING)
        .group_by(Job.tenant_id, Tenant.max_inflight)
        .having(func.count(Job.id) >= Tenant.max_inflight)
    )

    stmt = select(Job.id).where(
        Job.status == JobStatus.PENDING,
        Job.available_at <= now,
        Job.tenant_id.not_in(saturated_tenants),
    )
    if tenant_id:
        stmt = stmt.where(Job.tenant_id == tenant_id)

    stmt = (
        stmt.order_by(Job.priority.asc(), Job.created_at.asc(), Job.id.asc())
        .limit(candidates)
        .with_for_update(skip_locked=True, of=Job)
    )

    job_ids = (await session.execute(stmt)).scalars().all()

    for job_id in job_ids:
        try:
            return await try_claim(session, job_id, worker_id, now=now)
        except ClaimConflict:
            # Benign: another worker got there first
            JOB_CLAIM_TOTAL.labels(outcome="conflict").inc()
            logger.debug("Claim conflict on job %s for worker %s", job_id, worker_id)
            continue

    return None

async def try_claim(
    session: AsyncSession,
    job_id: UUID,
    worker_id: str,
    now: Optional[datetime] = None,
) -> Job:
    """
    Atomically moves one job from pending to running.
    Raises ClaimConflict if the job is no longer pending.
    """
    now = now or datetime.now(timezone.utc)
    claim_token = uuid4()

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.PENDING)
        .values(
            status=JobStatus.RUNNING,
            claimed_by=worker_id,
            claim_token=claim_token,
            started_at=now,
            heartbeat_at=now,
            next_attempt_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount != 1:
        raise ClaimConflict(f"Job {job_id} is no longer pending")

    job = await session.get(Job, job_id, populate_existing=True)

    JOB_CLAIM_TOTAL.labels(outcome="claimed").inc()
    QUEUE_DEPTH.labels(tenant_id=job.tenant_id).dec()
    if job.available_at:
        delay = (now - job.available_at).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)

    logger.info("Worker %s claimed job %s (type=%s attempt=%s)", worker_id, job.id, job.type, job.attempt_count + 1)
    return job
