import logging
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.commands.enqueue_job import get_job
from jobengine.db.models import Job
from jobengine.domain.errors import InvalidJobStateError
from jobengine.domain.states import JobStatus, TERMINAL_JOB_STATUSES
from jobengine.scheduler.outcomes import record_job_outcome
from jobengine.api.v1.metrics import QUEUE_DEPTH

logger = logging.getLogger(__name__)

async def cancel_job(session: AsyncSession, tenant_id: str, job_id: UUID) -> Job:
    """
    Cancels a job owned by `tenant_id`.

    Waiting jobs (pending, retrying) are cancelled on the spot. A running job
    only gets `cancel_requested` set; its handler sees the flag at the next
    progress update or checkpoint and stops. Caller commits.
    """
    job = await get_job(session, tenant_id, job_id)
    now = datetime.now(timezone.utc)

    if job.status in TERMINAL_JOB_STATUSES:
        raise InvalidJobStateError(job.status, JobStatus.CANCELLED)

    if job.status == JobStatus.RUNNING:
        job.cancel_requested = True
        job.updated_at = now
        await session.flush()
        logger.info("Cancel requested for running job %s", job.id)
        return job

    previous = job.status
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == previous)
        .values(
            status=JobStatus.CANCELLED,
            cancel_requested=True,
            finished_at=now,
            next_attempt_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        # Claimed or finished in the meantime; re-read and decide again
        await session.refresh(job)
        if job.status == JobStatus.RUNNING:
            job.cancel_requested = True
            await session.flush()
            return job
        raise InvalidJobStateError(job.status, JobStatus.CANCELLED)

    job = await session.get(Job, job_id, populate_existing=True)
    if previous == JobStatus.PENDING:
        QUEUE_DEPTH.labels(tenant_id=job.tenant_id).dec()
    logger.info("Job %s cancelled (was %s)", job.id, previous)

    await record_job_outcome(session, job, now=now)
    await session.flush()
    return job
