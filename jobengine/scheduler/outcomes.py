import logging
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import CronJob, CronJobExecution, Job
from jobengine.domain.states import ExecutionStatus, JobStatus
from jobengine.scheduler.alerts import ScheduleAlert, queue_alert
from jobengine.api.v1.metrics import SCHEDULE_OUTCOMES

logger = logging.getLogger(__name__)

def _as_uuid(value) -> Optional[UUID]:
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None

async def record_execution_outcome(
    session: AsyncSession,
    execution_id: UUID,
    success: bool,
    output: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[CronJob]:
    """
    Closes a CronJobExecution and folds the outcome into its schedule's
    statistics. Closing is conditional on the execution still running, so a
    redelivered outcome is ignored. Caller commits, then dispatches alerts.
    """
    now = now or datetime.now(timezone.utc)

    execution = await session.get(CronJobExecution, execution_id)
    if execution is None:
        logger.warning("Execution %s not found; outcome dropped", execution_id)
        return None

    status = ExecutionStatus.SUCCESS if success else ExecutionStatus.FAILED
    duration_ms = max(int((now - execution.started_at).total_seconds() * 1000), 0)

    closed = await session.execute(
        update(CronJobExecution)
        .where(CronJobExecution.id == execution_id, CronJobExecution.status == ExecutionStatus.RUNNING)
        .values(status=status, finished_at=now, duration_ms=duration_ms, output=output, error=error)
        .execution_options(synchronize_session=False)
    )
    if closed.rowcount != 1:
        logger.info("Execution %s already closed; ignoring duplicate outcome", execution_id)
        return await session.get(CronJob, execution.cron_job_id)

    SCHEDULE_OUTCOMES.labels(status=status).inc()

    # Counters are incremented in SQL so concurrent outcomes do not lose updates
    await session.execute(
        update(CronJob)
        .where(CronJob.id == execution.cron_job_id)
        .values(
            last_run_at=execution.started_at,
            run_count=CronJob.run_count + 1,
            success_count=CronJob.success_count + (1 if success else 0),
            failure_count=CronJob.failure_count + (0 if success else 1),
            consecutive_failures=0 if success else CronJob.consecutive_failures + 1,
            last_status=status,
            last_error=None if success else error,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )

    cron_job = await session.get(CronJob, execution.cron_job_id, populate_existing=True)

    if cron_job.max_runs is not None and cron_job.run_count >= cron_job.max_runs and cron_job.is_active:
        cron_job.is_active = False
        logger.info("Schedule %s reached max_runs=%s; deactivated", cron_job.id, cron_job.max_runs)

    if not success and cron_job.consecutive_failures >= cron_job.max_failures:
        paused = await session.execute(
            update(CronJob)
            .where(CronJob.id == cron_job.id, CronJob.is_paused.is_(False))
            .values(
                is_paused=True,
                paused_reason=f"Auto-paused after {cron_job.consecutive_failures} consecutive failures",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if paused.rowcount == 1:
            await session.refresh(cron_job)
            queue_alert(session, ScheduleAlert(
                cron_job_id=cron_job.id,
                tenant_id=cron_job.tenant_id,
                name=cron_job.name,
                source_type=str(cron_job.source_type),
                source_id=cron_job.source_id,
                consecutive_failures=cron_job.consecutive_failures,
                last_error=cron_job.last_error,
                raised_at=now,
            ))

    await session.flush()
    return cron_job

async def record_job_outcome(session: AsyncSession, job: Job, now: Optional[datetime] = None) -> Optional[CronJob]:
    """Closes the schedule execution that enqueued `job`, if any."""
    execution_id = _as_uuid((job.meta or {}).get("cron_execution_id"))
    if execution_id is None:
        return None

    if job.status == JobStatus.COMPLETED:
        return await record_execution_outcome(
            session, execution_id, True,
            output={"job_id": str(job.id), "result": job.result}, now=now,
        )
    if job.status in (JobStatus.FAILED, JobStatus.CANCELLED):
        return await record_execution_outcome(
            session, execution_id, False,
            output={"job_id": str(job.id), "status": str(job.status)},
            error=job.error or f"Job {job.status}", now=now,
        )
    return None
