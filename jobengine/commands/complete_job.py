import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import Job
from jobengine.domain.errors import ClaimLostError, JobNotFoundError
from jobengine.domain.states import JobStatus
from jobengine.scheduler.outcomes import record_job_outcome
from jobengine.api.v1.metrics import JOB_DURATION, JOB_COMPLETE_TOTAL

logger = logging.getLogger(__name__)

async def complete_job(
    session: AsyncSession,
    job_id: UUID,
    claim_token: UUID,
    result_data: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> Job:
    """
    Marks a running job as COMPLETED and stores its result.

    The write is conditional on the caller still holding the claim; if the
    reaper already handed the job to someone else this raises ClaimLostError
    and nothing is written. Caller commits.
    """
    now = now or datetime.now(timezone.utc)

    job = await session.get(Job, job_id, populate_existing=True)
    if not job:
        raise JobNotFoundError(job_id)

    duration_ms = None
    if job.started_at:
        duration_ms = max(int((now - job.started_at).total_seconds() * 1000), 0)

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.claim_token == claim_token)
        .values(
            status=JobStatus.COMPLETED,
            result=result_data if result_data is not None else {},
            progress=100,
            finished_at=now,
            duration_ms=duration_ms,
            error=None,
            error_type=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise ClaimLostError(f"Job {job_id} is no longer held by claim {claim_token}")

    job = await session.get(Job, job_id, populate_existing=True)

    if duration_ms is not None:
        JOB_DURATION.labels(job_type=job.type).observe(duration_ms / 1000)
    JOB_COMPLETE_TOTAL.labels(tenant_id=job.tenant_id, job_type=job.type).inc()
    logger.info("Job %s completed in %sms", job.id, duration_ms)

    await record_job_outcome(session, job, now=now)
    await session.flush()
    return job
