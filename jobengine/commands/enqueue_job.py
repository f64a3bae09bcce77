import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import Job, Tenant
from jobengine.domain.errors import JobNotFoundError, TenantError
from jobengine.domain.models import JobStatusView
from jobengine.domain.states import JobPriority, JobStatus
from jobengine.registry import JobTypeRegistry, get_registry
from jobengine.scheduler.broker import JobBroker, broker as default_broker
from jobengine.settings import settings
from jobengine.api.v1.metrics import JOB_ENQUEUED_TOTAL, QUEUE_DEPTH

logger = logging.getLogger(__name__)

async def enqueue_job(
    session: AsyncSession,
    tenant_id: str,
    job_type: str,
    payload: Optional[dict[str, Any]] = None,
    priority: Union[str, int, JobPriority] = JobPriority.NORMAL,
    max_retries: Optional[int] = None,
    metadata: Optional[dict[str, Any]] = None,
    delay_seconds: float = 0,
    registry: Optional[JobTypeRegistry] = None,
    broker: Optional[JobBroker] = None,
    commit: bool = True,
) -> Job:
    """
    Inserts a pending job and returns it.

    Once this returns (with commit=True) the job is durable and independent of
    any worker process. The broker is signalled after the commit only; it is a
    hint, never the record.
    """
    registry = registry if registry is not None else get_registry()
    registry.resolve(job_type)  # HandlerNotFound for unknown types

    tenant = await session.get(Tenant, tenant_id)
    if not tenant:
        raise TenantError(f"Tenant {tenant_id} not found")
    if not tenant.is_active:
        raise TenantError(f"Tenant {tenant_id} is not active")

    if max_retries is None:
        max_retries = settings.DEFAULT_MAX_RETRIES
    if max_retries < 0:
        raise ValueError("max_retries must be >= 0")

    now = datetime.now(timezone.utc)
    job = Job(
        tenant_id=tenant_id,
        type=job_type,
        payload=payload or {},
        priority=int(JobPriority.parse(priority)),
        max_retries=max_retries,
        meta=metadata or {},
        status=JobStatus.PENDING,
        created_at=now,
        available_at=now + timedelta(seconds=max(delay_seconds, 0)),
    )
    session.add(job)
    await session.flush()

    if commit:
        await session.commit()
        (broker or default_broker).notify(tenant_id)

    JOB_ENQUEUED_TOTAL.labels(tenant_id=tenant_id, job_type=job_type).inc()
    QUEUE_DEPTH.labels(tenant_id=tenant_id).inc()
    logger.info("Enqueued job %s type=%s tenant=%s priority=%s", job.id, job_type, tenant_id, job.priority)
    return job

async def get_job(session: AsyncSession, tenant_id: str, job_id: UUID) -> Job:
    job = await session.get(Job, job_id)
    # Other tenants' jobs are indistinguishable from missing ones
    if not job or job.tenant_id != tenant_id:
        raise JobNotFoundError(job_id)
    return job

async def get_status(session: AsyncSession, tenant_id: str, job_id: UUID) -> JobStatusView:
    """Single indexed read; UIs poll this every second or two."""
    stmt = select(
        Job.id, Job.type, Job.status, Job.progress, Job.progress_message, Job.result, Job.error
    ).where(Job.id == job_id, Job.tenant_id == tenant_id)
    row = (await session.execute(stmt)).one_or_none()
    if row is None:
        raise JobNotFoundError(job_id)
    return JobStatusView(
        id=row.id,
        type=row.type,
        status=JobStatus(row.status),
        progress=row.progress or 0,
        progress_message=row.progress_message,
        result=row.result,
        error=row.error,
    )
