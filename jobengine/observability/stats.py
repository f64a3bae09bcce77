"""
Read-only aggregates over jobs and schedule executions. Nothing here writes.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import CronJob, CronJobExecution, Job
from jobengine.domain.states import ExecutionStatus, JobStatus

async def job_counts_by_status(session: AsyncSession, tenant_id: Optional[str] = None) -> dict[str, int]:
    stmt = select(Job.status, func.count(Job.id)).group_by(Job.status)
    if tenant_id:
        stmt = stmt.where(Job.tenant_id == tenant_id)
    counts = {str(status): 0 for status in JobStatus}
    for status, count in (await session.execute(stmt)).all():
        counts[str(status)] = count
    return counts

async def job_type_stats(
    session: AsyncSession,
    tenant_id: Optional[str] = None,
    since: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """Per job type: finished count, success rate and average duration."""
    finished = Job.status.in_([JobStatus.COMPLETED, JobStatus.FAILED])
    stmt = (
        select(
            Job.type,
            func.count(Job.id).label("total"),
            func.sum(case((Job.status == JobStatus.COMPLETED, 1), else_=0)).label("completed"),
            func.sum(case((Job.status == JobStatus.FAILED, 1), else_=0)).label("failed"),
            func.avg(Job.duration_ms).label("avg_duration_ms"),
        )
        .where(finished)
        .group_by(Job.type)
        .order_by(Job.type)
    )
    if tenant_id:
        stmt = stmt.where(Job.tenant_id == tenant_id)
    if since:
        stmt = stmt.where(Job.finished_at >= since)

    rows = (await session.execute(stmt)).all()
    return [
        {
            "jobType": row.type,
            "total": row.total,
            "completed": int(row.completed or 0),
            "failed": int(row.failed or 0),
            "successRate": _rate(row.completed, row.total),
            "avgDurationMs": _round(row.avg_duration_ms),
        }
        for row in rows
    ]

async def schedule_execution_stats(
    session: AsyncSession,
    tenant_id: Optional[str] = None,
    since: Optional[datetime] = None,
) -> list[dict[str, Any]]:
    """Per schedule job type, from closed executions."""
    closed = CronJobExecution.status != ExecutionStatus.RUNNING
    stmt = (
        select(
            CronJob.job_type,
            func.count(CronJobExecution.id).label("total"),
            func.sum(case((CronJobExecution.status == ExecutionStatus.SUCCESS, 1), else_=0)).label("succeeded"),
            func.avg(CronJobExecution.duration_ms).label("avg_duration_ms"),
        )
        .join(CronJob, CronJob.id == CronJobExecution.cron_job_id)
        .where(closed)
        .group_by(CronJob.job_type)
        .order_by(CronJob.job_type)
    )
    if tenant_id:
        stmt = stmt.where(CronJobExecution.tenant_id == tenant_id)
    if since:
        stmt = stmt.where(CronJobExecution.started_at >= since)

    rows = (await session.execute(stmt)).all()
    return [
        {
            "jobType": row.job_type,
            "total": row.total,
            "succeeded": int(row.succeeded or 0),
            "failed": row.total - int(row.succeeded or 0),
            "successRate": _rate(row.succeeded, row.total),
            "avgDurationMs": _round(row.avg_duration_ms),
        }
        for row in rows
    ]

async def schedule_summary(session: AsyncSession, tenant_id: Optional[str] = None) -> dict[str, int]:
    stmt = select(
        func.count(CronJob.id).label("total"),
        func.sum(case((CronJob.is_active.is_(True), 1), else_=0)).label("active"),
        func.sum(case((CronJob.is_paused.is_(True), 1), else_=0)).label("paused"),
    )
    if tenant_id:
        stmt = stmt.where(CronJob.tenant_id == tenant_id)
    row = (await session.execute(stmt)).one()
    return {"total": row.total or 0, "active": int(row.active or 0), "paused": int(row.paused or 0)}

async def collect_stats(
    session: AsyncSession,
    tenant_id: Optional[str] = None,
    window_hours: Optional[int] = 24,
) -> dict[str, Any]:
    since = None
    if window_hours:
        since = datetime.now(timezone.utc) - timedelta(hours=window_hours)

    counts = await job_counts_by_status(session, tenant_id)
    return {
        "windowHours": window_hours,
        "jobs": {
            "byStatus": counts,
            "running": counts[str(JobStatus.RUNNING)],
            "pendingBacklog": counts[str(JobStatus.PENDING)] + counts[str(JobStatus.RETRYING)],
            "byType": await job_type_stats(session, tenant_id, since),
        },
        "schedules": {
            **await schedule_summary(session, tenant_id),
            "byType": await schedule_execution_stats(session, tenant_id, since),
        },
    }

def _rate(part, total) -> Optional[float]:
    if not total:
        return None
    return round(float(part or 0) / float(total), 4)

def _round(value) -> Optional[float]:
    return round(float(value), 1) if value is not None else None
