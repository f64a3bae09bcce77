import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import CronJob, CronJobExecution, Tenant
from jobengine.domain.cron import next_run_after, validate_cron_expression
from jobengine.domain.errors import InvalidJobStateError, ScheduleMisconfigured, ScheduleNotFoundError, TenantError
from jobengine.domain.states import ExecutionStatus, JobPriority, ScheduleSourceType, TriggerSource
from jobengine.registry import JobTypeRegistry, get_registry
from jobengine.scheduler.broker import JobBroker
from jobengine.scheduler.tick import dispatch_execution, session_factory_for
from jobengine.settings import settings

logger = logging.getLogger(__name__)

async def create_cron_job(
    session: AsyncSession,
    tenant_id: Optional[str],
    name: str,
    cron_expression: str,
    job_type: str,
    timezone_name: str = "UTC",
    configuration: Optional[dict[str, Any]] = None,
    description: Optional[str] = None,
    source_type: Union[str, ScheduleSourceType] = ScheduleSourceType.USER,
    source_id: Optional[str] = None,
    priority: Union[str, int, JobPriority] = JobPriority.NORMAL,
    max_retries: Optional[int] = None,
    max_failures: Optional[int] = None,
    max_runs: Optional[int] = None,
    run_once: bool = False,
    registry: Optional[JobTypeRegistry] = None,
    now: Optional[datetime] = None,
) -> CronJob:
    """
    Creates a schedule. `tenant_id=None` makes it system-wide.

    Raises ScheduleMisconfigured for a bad expression or timezone and
    HandlerNotFound for an unknown job type. Caller commits.
    """
    registry = registry if registry is not None else get_registry()
    now = now or datetime.now(timezone.utc)

    expression = validate_cron_expression(cron_expression, timezone_name)
    registry.resolve(job_type)

    if tenant_id is not None:
        tenant = await session.get(Tenant, tenant_id)
        if not tenant or not tenant.is_active:
            raise TenantError(f"Tenant {tenant_id} not found or inactive")
    if max_failures is not None and max_failures < 1:
        raise ScheduleMisconfigured("max_failures must be >= 1")
    if max_runs is not None and max_runs < 1:
        raise ScheduleMisconfigured("max_runs must be >= 1")
    if max_retries is not None and max_retries < 0:
        raise ScheduleMisconfigured("max_retries must be >= 0")

    source = ScheduleSourceType(source_type)
    if tenant_id is None:
        source = ScheduleSourceType.SYSTEM

    cron_job = CronJob(
        tenant_id=tenant_id,
        name=name,
        description=description,
        cron_expression=expression,
        timezone=timezone_name or "UTC",
        job_type=job_type,
        configuration=configuration or {},
        priority=int(JobPriority.parse(priority)),
        max_retries=settings.DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
        source_type=source,
        source_id=source_id,
        is_system=tenant_id is None,
        max_failures=max_failures or settings.CRON_MAX_CONSECUTIVE_FAILURES,
        max_runs=max_runs,
        run_once=run_once,
        next_run_at=next_run_after(expression, timezone_name, now),
        created_at=now,
        updated_at=now,
    )
    session.add(cron_job)
    await session.flush()
    logger.info(
        "Created schedule %s '%s' (%s %s) next run %s",
        cron_job.id, name, expression, cron_job.timezone, cron_job.next_run_at.isoformat(),
    )
    return cron_job

async def get_cron_job(session: AsyncSession, tenant_id: Optional[str], cron_job_id: UUID) -> CronJob:
    """`tenant_id=None` is admin access and sees every schedule."""
    cron_job = await session.get(CronJob, cron_job_id)
    if not cron_job or (tenant_id is not None and cron_job.tenant_id != tenant_id):
        raise ScheduleNotFoundError(cron_job_id)
    return cron_job

async def list_cron_jobs(
    session: AsyncSession,
    tenant_id: str,
    include_inactive: bool = False,
    source_type: Optional[str] = None,
) -> list[CronJob]:
    stmt = select(CronJob).where(CronJob.tenant_id == tenant_id)
    if not include_inactive:
        stmt = stmt.where(CronJob.is_active.is_(True))
    if source_type:
        stmt = stmt.where(CronJob.source_type == source_type)
    stmt = stmt.order_by(CronJob.created_at.asc())
    return list((await session.execute(stmt)).scalars().all())

async def pause_cron_job(
    session: AsyncSession,
    tenant_id: Optional[str],
    cron_job_id: UUID,
    reason: str = "Paused by user",
) -> CronJob:
    cron_job = await get_cron_job(session, tenant_id, cron_job_id)
    if not cron_job.is_active:
        raise InvalidJobStateError("inactive", "paused")
    cron_job.is_paused = True
    cron_job.paused_reason = reason
    cron_job.updated_at = datetime.now(timezone.utc)
    await session.flush()
    logger.info("Paused schedule %s: %s", cron_job.id, reason)
    return cron_job

async def resume_cron_job(
    session: AsyncSession,
    tenant_id: Optional[str],
    cron_job_id: UUID,
    now: Optional[datetime] = None,
) -> CronJob:
    """Unpauses, resets the failure streak and recomputes next_run_at from now."""
    now = now or datetime.now(timezone.utc)
    cron_job = await get_cron_job(session, tenant_id, cron_job_id)
    if not cron_job.is_active:
        raise InvalidJobStateError("inactive", "active")

    cron_job.is_paused = False
    cron_job.paused_reason = None
    cron_job.consecutive_failures = 0
    cron_job.next_run_at = next_run_after(cron_job.cron_expression, cron_job.timezone, now)
    cron_job.updated_at = now
    await session.flush()
    logger.info("Resumed schedule %s; next run %s", cron_job.id, cron_job.next_run_at.isoformat())
    return cron_job

async def update_cron_job(
    session: AsyncSession,
    tenant_id: Optional[str],
    cron_job_id: UUID,
    name: Optional[str] = None,
    description: Optional[str] = None,
    cron_expression: Optional[str] = None,
    timezone_name: Optional[str] = None,
    job_type: Optional[str] = None,
    configuration: Optional[dict[str, Any]] = None,
    priority: Union[str, int, JobPriority, None] = None,
    max_retries: Optional[int] = None,
    max_failures: Optional[int] = None,
    max_runs: Optional[int] = None,
    registry: Optional[JobTypeRegistry] = None,
    now: Optional[datetime] = None,
) -> CronJob:
    """
    Edits a schedule in place, keeping its statistics and history. Arguments
    left as None are unchanged. A new expression or timezone recomputes
    next_run_at from now. Caller commits.
    """
    registry = registry if registry is not None else get_registry()
    now = now or datetime.now(timezone.utc)
    cron_job = await get_cron_job(session, tenant_id, cron_job_id)
    if not cron_job.is_active:
        raise InvalidJobStateError("inactive", "updated")

    reschedule = cron_expression is not None or timezone_name is not None
    expression = validate_cron_expression(
        cron_expression if cron_expression is not None else cron_job.cron_expression,
        timezone_name or cron_job.timezone,
    )
    if job_type is not None:
        registry.resolve(job_type)
    if max_failures is not None and max_failures < 1:
        raise ScheduleMisconfigured("max_failures must be >= 1")
    if max_runs is not None and max_runs < 1:
        raise ScheduleMisconfigured("max_runs must be >= 1")
    if max_retries is not None and max_retries < 0:
        raise ScheduleMisconfigured("max_retries must be >= 0")

    if name is not None:
        cron_job.name = name
    if job_type is not None:
        cron_job.job_type = job_type
    if description is not None:
        cron_job.description = description
    if configuration is not None:
        cron_job.configuration = configuration
    if priority is not None:
        cron_job.priority = int(JobPriority.parse(priority))
    if max_retries is not None:
        cron_job.max_retries = max_retries
    if max_failures is not None:
        cron_job.max_failures = max_failures
    if max_runs is not None:
        cron_job.max_runs = max_runs

    if reschedule:
        cron_job.cron_expression = expression
        cron_job.timezone = timezone_name or cron_job.timezone
        cron_job.next_run_at = next_run_after(expression, cron_job.timezone, now)
    cron_job.updated_at = now
    await session.flush()
    logger.info("Updated schedule %s; next run %s", cron_job.id, cron_job.next_run_at)
    return cron_job

async def deactivate_cron_job(session: AsyncSession, tenant_id: Optional[str], cron_job_id: UUID) -> CronJob:
    """Soft delete: the row stays for its execution history."""
    cron_job = await get_cron_job(session, tenant_id, cron_job_id)
    cron_job.is_active = False
    cron_job.next_run_at = None
    cron_job.updated_at = datetime.now(timezone.utc)
    await session.flush()
    logger.info("Deactivated schedule %s", cron_job.id)
    return cron_job

async def list_executions(
    session: AsyncSession,
    tenant_id: Optional[str],
    cron_job_id: UUID,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[CronJobExecution], int]:
    """Newest first. Returns (items, total)."""
    await get_cron_job(session, tenant_id, cron_job_id)
    page = max(page, 1)
    limit = max(1, min(limit, 100))

    total = await session.scalar(
        select(func.count(CronJobExecution.id)).where(CronJobExecution.cron_job_id == cron_job_id)
    )
    stmt = (
        select(CronJobExecution)
        .where(CronJobExecution.cron_job_id == cron_job_id)
        .order_by(CronJobExecution.started_at.desc(), CronJobExecution.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    items = list((await session.execute(stmt)).scalars().all())
    return items, total or 0

async def execute_cron_job_now(
    session: AsyncSession,
    tenant_id: Optional[str],
    cron_job_id: UUID,
    registry: Optional[JobTypeRegistry] = None,
    broker: Optional[JobBroker] = None,
) -> CronJobExecution:
    """
    Manual trigger. Records a `manual` execution and runs it like a tick
    would, without touching next_run_at. Works on paused schedules too.
    """
    cron_job = await get_cron_job(session, tenant_id, cron_job_id)
    if not cron_job.is_active:
        raise InvalidJobStateError("inactive", "running")

    execution = CronJobExecution(
        cron_job_id=cron_job.id,
        tenant_id=cron_job.tenant_id,
        triggered_by=TriggerSource.MANUAL,
        status=ExecutionStatus.RUNNING,
        started_at=datetime.now(timezone.utc),
    )
    session.add(execution)
    await session.commit()
    logger.info("Manually executing schedule %s (%s)", cron_job.id, cron_job.job_type)

    await dispatch_execution(
        session, session_factory_for(session), cron_job, execution, registry=registry, broker=broker,
    )
    await session.refresh(execution)
    return execution
