import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, or_, and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import Job
from jobengine.domain.states import JobStatus, TERMINAL_JOB_STATUSES
from jobengine.scheduler.outcomes import record_job_outcome
from jobengine.settings import settings
from jobengine.api.v1.metrics import QUEUE_DEPTH, REAPER_RECOVERED_JOBS, RETRY_PROMOTED_JOBS

logger = logging.getLogger(__name__)

STALE_ERROR = "Worker stopped heartbeating (process crash or restart?)"

async def reap_stale_jobs(
    session: AsyncSession,
    now: Optional[datetime] = None,
    stale_after_seconds: Optional[int] = None,
    limit: int = 100,
) -> int:
    """
    Recovers RUNNING jobs whose worker went silent.

    A job counts as stale when its last heartbeat (or its start, if it never
    sent one) is older than the stale timeout. The lost run counts as a
    failed attempt: the job is made available again immediately while
    attempts remain, otherwise it is FAILED. A job with a pending cancel
    request is cancelled instead. Returns the number of jobs recovered.
    Caller commits.
    """
    now = now or datetime.now(timezone.utc)
    stale_after = stale_after_seconds if stale_after_seconds is not None else settings.STALE_JOB_TIMEOUT_SECONDS
    cutoff = now - timedelta(seconds=stale_after)

    stmt = (
        select(Job)
        .where(
            Job.status == JobStatus.RUNNING,
            or_(
                Job.heartbeat_at < cutoff,
                and_(Job.heartbeat_at.is_(None), Job.started_at < cutoff),
            ),
        )
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    stale_jobs = (await session.execute(stmt)).scalars().all()

    recovered = 0
    for job in stale_jobs:
        worker_id = job.claimed_by
        attempts = job.attempt_count + 1
        values = dict(
            attempt_count=attempts,
            claimed_by=None,
            claim_token=None,
            error=STALE_ERROR,
            error_type="StaleJob",
            updated_at=now,
        )
        if job.cancel_requested:
            values.update(status=JobStatus.CANCELLED, finished_at=now)
        elif attempts <= job.max_retries:
            values.update(status=JobStatus.PENDING, available_at=now, heartbeat_at=None)
        else:
            values.update(status=JobStatus.FAILED, finished_at=now)

        # Guarded on the claim we read, in case the owner finished meanwhile
        res = await session.execute(
            update(Job)
            .where(Job.id == job.id, Job.status == JobStatus.RUNNING, Job.claim_token == job.claim_token)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            continue

        recovered += 1
        job = await session.get(Job, job.id, populate_existing=True)
        if job.status == JobStatus.PENDING:
            QUEUE_DEPTH.labels(tenant_id=job.tenant_id).inc()
        logger.warning(
            "Reaped stale job %s (worker=%s, attempt %s) -> %s",
            job.id, worker_id, attempts, job.status,
        )
        await record_job_outcome(session, job, now=now)

    if recovered:
        REAPER_RECOVERED_JOBS.inc(recovered)
    await session.flush()
    return recovered

async def promote_retrying_jobs(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Moves RETRYING jobs whose backoff has elapsed back to PENDING."""
    now = now or datetime.now(timezone.utc)
    stmt = (
        update(Job)
        .where(Job.status == JobStatus.RETRYING, Job.next_attempt_at <= now)
        .values(
            status=JobStatus.PENDING,
            available_at=now,
            claimed_by=None,
            claim_token=None,
            heartbeat_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    promoted = res.rowcount or 0
    if promoted:
        RETRY_PROMOTED_JOBS.inc(promoted)
        logger.info("Promoted %s retrying job(s) to pending", promoted)
    return promoted

async def purge_finished_jobs(
    session: AsyncSession,
    now: Optional[datetime] = None,
    retention_days: Optional[int] = None,
) -> int:
    """Deletes terminal jobs that finished more than `retention_days` ago."""
    now = now or datetime.now(timezone.utc)
    days = retention_days if retention_days is not None else settings.JOB_RETENTION_DAYS
    cutoff = now - timedelta(days=days)

    res = await session.execute(
        delete(Job)
        .where(Job.status.in_(list(TERMINAL_JOB_STATUSES)), Job.finished_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    purged = res.rowcount or 0
    if purged:
        logger.info("Purged %s finished job(s) older than %s days", purged, days)
    return purged
