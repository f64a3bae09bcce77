from datetime import datetime
from typing import Any, Optional, Union
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from jobengine.api.deps import Broker, DbSession, Registry
from jobengine.auth.security import CurrentTenant
from jobengine.commands import schedules
from jobengine.domain.errors import (
    HandlerNotFound, InvalidJobStateError, ScheduleMisconfigured, ScheduleNotFoundError,
)
from jobengine.domain.states import ExecutionStatus, ScheduleSourceType, TriggerSource
from jobengine.tenancy import tenant_context

router = APIRouter()

# System types a tenant may put on its own schedules
TENANT_SCHEDULABLE_SYSTEM_TYPES = {"system:webhook"}

class CronJobCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    cron_expression: str
    timezone: str = "UTC"
    job_type: str
    configuration: dict[str, Any] = Field(default_factory=dict)
    source_type: ScheduleSourceType = ScheduleSourceType.USER
    source_id: Optional[str] = None
    priority: Union[str, int] = "normal"
    max_retries: Optional[int] = Field(default=None, ge=0)
    max_failures: Optional[int] = Field(default=None, ge=1)
    max_runs: Optional[int] = Field(default=None, ge=1)
    run_once: bool = False

class CronJobResponse(BaseModel):
    id: UUID
    tenant_id: Optional[str]
    name: str
    description: Optional[str] = None
    cron_expression: str
    timezone: str
    job_type: str
    configuration: dict[str, Any]
    source_type: ScheduleSourceType
    source_id: Optional[str] = None
    priority: int
    max_retries: int
    is_system: bool
    is_active: bool
    is_paused: bool
    paused_reason: Optional[str] = None
    max_failures: int
    max_runs: Optional[int] = None
    run_once: bool
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    run_count: int
    success_count: int
    failure_count: int
    consecutive_failures: int
    last_status: Optional[ExecutionStatus] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)

class ExecutionResponse(BaseModel):
    id: UUID
    cron_job_id: UUID
    job_id: Optional[UUID] = None
    triggered_by: TriggerSource
    status: ExecutionStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)

class ExecutionPage(BaseModel):
    items: list[ExecutionResponse]
    page: int
    limit: int
    total: int
    totalPages: int

class CronJobUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    cron_expression: Optional[str] = None
    timezone: Optional[str] = None
    job_type: Optional[str] = None
    configuration: Optional[dict[str, Any]] = None
    priority: Optional[Union[str, int]] = None
    max_retries: Optional[int] = Field(default=None, ge=0)
    max_failures: Optional[int] = Field(default=None, ge=1)
    max_runs: Optional[int] = Field(default=None, ge=1)

class JobTypeInfo(BaseModel):
    type: str
    inline: bool
    description: str = ""

class PauseRequest(BaseModel):
    reason: Optional[str] = None

def _check_schedulable(job_type: str) -> None:
    if job_type.lower().startswith("system:") and job_type not in TENANT_SCHEDULABLE_SYSTEM_TYPES:
        raise HTTPException(status_code=403, detail=f"Job type '{job_type}' is reserved for the system")

@router.post("", response_model=CronJobResponse, status_code=status.HTTP_201_CREATED)
async def create_cron_job(payload: CronJobCreate, tenant: CurrentTenant, session: DbSession, registry: Registry):
    job_type = payload.job_type
    _check_schedulable(job_type)
    if payload.source_type == ScheduleSourceType.SYSTEM:
        raise HTTPException(status_code=403, detail="Tenants cannot create system schedules")

    with tenant_context(tenant.id):
        try:
            cron_job = await schedules.create_cron_job(
                session,
                tenant_id=tenant.id,
                name=payload.name,
                cron_expression=payload.cron_expression,
                job_type=job_type,
                timezone_name=payload.timezone,
                configuration=payload.configuration,
                description=payload.description,
                source_type=payload.source_type,
                source_id=payload.source_id,
                priority=payload.priority,
                max_retries=payload.max_retries,
                max_failures=payload.max_failures,
                max_runs=payload.max_runs,
                run_once=payload.run_once,
                registry=registry,
            )
        except (ScheduleMisconfigured, HandlerNotFound, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        await session.commit()
    return cron_job

@router.get("", response_model=list[CronJobResponse])
async def list_cron_jobs(
    tenant: CurrentTenant,
    session: DbSession,
    include_inactive: bool = False,
    source_type: Optional[ScheduleSourceType] = None,
):
    return await schedules.list_cron_jobs(session, tenant.id, include_inactive=include_inactive, source_type=source_type)

@router.get("/types", response_model=list[JobTypeInfo])
async def list_job_types(tenant: CurrentTenant, registry: Registry):
    """Job types a tenant can put on a schedule."""
    items = []
    for job_type in registry.types():
        if job_type.lower().startswith("system:") and job_type not in TENANT_SCHEDULABLE_SYSTEM_TYPES:
            continue
        handler = registry.resolve(job_type)
        items.append(JobTypeInfo(type=job_type, inline=handler.inline, description=handler.description))
    return items

@router.get("/{cron_job_id}", response_model=CronJobResponse)
async def get_cron_job(cron_job_id: UUID, tenant: CurrentTenant, session: DbSession):
    try:
        return await schedules.get_cron_job(session, tenant.id, cron_job_id)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")

@router.put("/{cron_job_id}", response_model=CronJobResponse)
async def update_cron_job(
    cron_job_id: UUID, payload: CronJobUpdate, tenant: CurrentTenant, session: DbSession, registry: Registry
):
    if payload.job_type is not None:
        _check_schedulable(payload.job_type)

    with tenant_context(tenant.id):
        try:
            cron_job = await schedules.update_cron_job(
                session,
                tenant.id,
                cron_job_id,
                name=payload.name,
                description=payload.description,
                cron_expression=payload.cron_expression,
                timezone_name=payload.timezone,
                job_type=payload.job_type,
                configuration=payload.configuration,
                priority=payload.priority,
                max_retries=payload.max_retries,
                max_failures=payload.max_failures,
                max_runs=payload.max_runs,
                registry=registry,
            )
        except ScheduleNotFoundError:
            raise HTTPException(status_code=404, detail="Cron job not found")
        except InvalidJobStateError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except (ScheduleMisconfigured, HandlerNotFound, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        await session.commit()
    return cron_job

@router.post("/{cron_job_id}/pause", response_model=CronJobResponse)
async def pause_cron_job(cron_job_id: UUID, tenant: CurrentTenant, session: DbSession, payload: Optional[PauseRequest] = None):
    reason = (payload.reason if payload else None) or "Paused by user"
    try:
        cron_job = await schedules.pause_cron_job(session, tenant.id, cron_job_id, reason=reason)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await session.commit()
    return cron_job

@router.post("/{cron_job_id}/resume", response_model=CronJobResponse)
async def resume_cron_job(cron_job_id: UUID, tenant: CurrentTenant, session: DbSession):
    try:
        cron_job = await schedules.resume_cron_job(session, tenant.id, cron_job_id)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await session.commit()
    return cron_job

@router.post("/{cron_job_id}/execute", response_model=ExecutionResponse)
async def execute_cron_job(
    cron_job_id: UUID, tenant: CurrentTenant, session: DbSession, registry: Registry, broker: Broker
):
    with tenant_context(tenant.id):
        try:
            return await schedules.execute_cron_job_now(
                session, tenant.id, cron_job_id, registry=registry, broker=broker
            )
        except ScheduleNotFoundError:
            raise HTTPException(status_code=404, detail="Cron job not found")
        except InvalidJobStateError as e:
            raise HTTPException(status_code=409, detail=str(e))

@router.delete("/{cron_job_id}", response_model=CronJobResponse)
async def deactivate_cron_job(cron_job_id: UUID, tenant: CurrentTenant, session: DbSession):
    try:
        cron_job = await schedules.deactivate_cron_job(session, tenant.id, cron_job_id)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")
    await session.commit()
    return cron_job

@router.get("/{cron_job_id}/executions", response_model=ExecutionPage)
async def list_executions(
    cron_job_id: UUID,
    tenant: CurrentTenant,
    session: DbSession,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    try:
        items, total = await schedules.list_executions(session, tenant.id, cron_job_id, page=page, limit=limit)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")
    return ExecutionPage(
        items=[ExecutionResponse.model_validate(item) for item in items],
        page=page,
        limit=limit,
        total=total,
        totalPages=(total + limit - 1) // limit,
    )
