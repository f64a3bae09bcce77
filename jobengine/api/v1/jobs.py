from datetime import datetime
from typing import Any, Optional, Union
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field

from jobengine.api.deps import Broker, DbSession, Registry
from jobengine.auth.security import CurrentTenant
from jobengine.commands.cancel_job import cancel_job as cancel_job_command
from jobengine.commands.enqueue_job import enqueue_job, get_job as get_job_command, get_status
from jobengine.domain.errors import HandlerNotFound, InvalidJobStateError, JobNotFoundError
from jobengine.domain.states import JobPriority, JobStatus
from jobengine.observability.stats import job_counts_by_status
from jobengine.scheduler.alerts import dispatch_alerts
from jobengine.tenancy import tenant_context

router = APIRouter()

# Reserved for system schedules; tenants cannot enqueue these directly
SYSTEM_NAMESPACE = "system:"

class JobCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: Union[str, int] = "normal"
    max_retries: Optional[int] = Field(default=None, alias="maxRetries", ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    delay_seconds: float = Field(default=0, alias="delaySeconds", ge=0)

class JobCreated(BaseModel):
    jobId: UUID

class JobStatusResponse(BaseModel):
    status: JobStatus
    progress: int
    progressMessage: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

class JobResponse(BaseModel):
    id: UUID
    tenant_id: str
    type: str
    status: JobStatus
    priority: int
    progress: int
    progress_message: Optional[str] = None
    payload: dict[str, Any]
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    attempt_count: int
    max_retries: int
    cancel_requested: bool
    metadata: dict[str, Any] = Field(validation_alias="meta")
    created_at: datetime
    available_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    model_config = ConfigDict(from_attributes=True)

@router.post("", response_model=JobCreated, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreate, tenant: CurrentTenant, session: DbSession, registry: Registry, broker: Broker):
    if payload.type.lower().startswith(SYSTEM_NAMESPACE):
        raise HTTPException(status_code=403, detail=f"Job type '{payload.type}' is reserved for the system")
    try:
        priority = JobPriority.parse(payload.priority)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    with tenant_context(tenant.id):
        try:
            job = await enqueue_job(
                session,
                tenant_id=tenant.id,
                job_type=payload.type,
                payload=payload.payload,
                priority=priority,
                max_retries=payload.max_retries,
                metadata=payload.metadata,
                delay_seconds=payload.delay_seconds,
                registry=registry,
                broker=broker,
            )
        except HandlerNotFound as e:
            raise HTTPException(status_code=400, detail=str(e))
    return JobCreated(jobId=job.id)

@router.get("/status")
async def get_status_counts(tenant: CurrentTenant, session: DbSession):
    return await job_counts_by_status(session, tenant.id)

@router.get("/{job_id}/status", response_model=JobStatusResponse, response_model_exclude_none=True)
async def get_job_status(job_id: UUID, tenant: CurrentTenant, session: DbSession):
    try:
        view = await get_status(session, tenant.id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(
        status=view.status,
        progress=view.progress,
        progressMessage=view.progress_message,
        result=view.result,
        error=view.error,
    )

@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: UUID, tenant: CurrentTenant, session: DbSession):
    try:
        return await get_job_command(session, tenant.id, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: UUID, tenant: CurrentTenant, session: DbSession):
    with tenant_context(tenant.id):
        try:
            job = await cancel_job_command(session, tenant.id, job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        except InvalidJobStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        await session.commit()
        await dispatch_alerts(session)
    return job
