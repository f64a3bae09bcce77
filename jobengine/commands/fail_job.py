import logging
from datetime import datetime, timezone
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import Job
from jobengine.domain.errors import ClaimLostError, JobNotFoundError
from jobengine.domain.retry import calculate_next_attempt, is_retryable
from jobengine.domain.states import JobStatus
from jobengine.scheduler.outcomes import record_job_outcome
from jobengine.api.v1.metrics import JOB_FAILURES

logger = logging.getLogger(__name__)

def describe_error(error: Union[BaseException, str]) -> tuple[str, str]:
    """Returns (message, error_type) as stored on the job row."""
    if isinstance(error, BaseException):
        error_type = type(error).__name__
        return f"{error_type}: {error}", error_type
    return str(error), "Error"

async def _load_claimed(session: AsyncSession, job_id: UUID, claim_token: UUID) -> Job:
    job = await session.get(Job, job_id, populate_existing=True)
    if not job:
        raise JobNotFoundError(job_id)
    if job.status != JobStatus.RUNNING or job.claim_token != claim_token:
        raise ClaimLostError(f"Job {job_id} is no longer held by claim {claim_token}")
    return job

async def fail_job(
    session: AsyncSession,
    job_id: UUID,
    claim_token: UUID,
    error: Union[BaseException, str],
    now: Optional[datetime] = None,
    retryable: Optional[bool] = None,
) -> Job:
    """
    Records a failed attempt.

    While attempts remain (attempt_count <= max_retries) the job goes to
    RETRYING with next_attempt_at set from the backoff ladder; otherwise it
    is FAILED for good. Permanent errors skip the remaining retries.
    Caller commits.
    """
    now = now or datetime.now(timezone.utc)
    job = await _load_claimed(session, job_id, claim_token)

    message, error_type = describe_error(error)
    if retryable is None:
        retryable = is_retryable(error) if isinstance(error, BaseException) else True

    attempts = job.attempt_count + 1
    values = dict(
        attempt_count=attempts,
        error=message,
        error_type=error_type,
        updated_at=now,
    )

    if retryable and attempts <= job.max_retries:
        next_attempt = calculate_next_attempt(attempts, now=now)
        values.update(status=JobStatus.RETRYING, next_attempt_at=next_attempt)
        JOB_FAILURES.labels(tenant_id=job.tenant_id, type="retryable").inc()
        logger.warning(
            "Job %s failed (attempt %s/%s), retrying at %s: %s",
            job.id, attempts, job.max_retries + 1, next_attempt.isoformat(), message,
        )
    else:
        duration_ms = None
        if job.started_at:
            duration_ms = max(int((now - job.started_at).total_seconds() * 1000), 0)
        values.update(status=JobStatus.FAILED, finished_at=now, duration_ms=duration_ms, next_attempt_at=None)
        JOB_FAILURES.labels(tenant_id=job.tenant_id, type="final").inc()
        logger.error("Job %s failed permanently after %s attempt(s): %s", job.id, attempts, message)

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.claim_token == claim_token)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise ClaimLostError(f"Job {job_id} is no longer held by claim {claim_token}")

    job = await session.get(Job, job_id, populate_existing=True)
    await record_job_outcome(session, job, now=now)
    await session.flush()
    return job

async def mark_cancelled(
    session: AsyncSession,
    job_id: UUID,
    claim_token: UUID,
    now: Optional[datetime] = None,
) -> Job:
    """Finishes a running job whose handler stopped on a cancel request."""
    now = now or datetime.now(timezone.utc)
    job = await _load_claimed(session, job_id, claim_token)

    duration_ms = None
    if job.started_at:
        duration_ms = max(int((now - job.started_at).total_seconds() * 1000), 0)

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING, Job.claim_token == claim_token)
        .values(
            status=JobStatus.CANCELLED,
            error="Cancelled while running",
            error_type="JobCancelledError",
            finished_at=now,
            duration_ms=duration_ms,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    if res.rowcount != 1:
        raise ClaimLostError(f"Job {job_id} is no longer held by claim {claim_token}")

    job = await session.get(Job, job_id, populate_existing=True)
    logger.info("Job %s cancelled while running", job.id)
    await record_job_outcome(session, job, now=now)
    await session.flush()
    return job
