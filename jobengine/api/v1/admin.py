from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from pydantic import BaseModel, Field

from jobengine.api.deps import Broker, DbSession, Registry, SessionFactory
from jobengine.api.v1.cron_jobs import ExecutionPage, ExecutionResponse, PauseRequest
from jobengine.commands import schedules
from jobengine.commands.maintenance import promote_retrying_jobs, reap_stale_jobs
from jobengine.commands.tenants import create_tenant as create_tenant_command, ensure_system_tenant
from jobengine.domain.errors import (
    HandlerNotFound, InvalidJobStateError, ScheduleMisconfigured, ScheduleNotFoundError, TenantError,
)
from jobengine.scheduler.alerts import dispatch_alerts
from jobengine.scheduler.tick import run_tick

router = APIRouter()

class TickRequest(BaseModel):
    # Mainly for replaying a tick at a fixed instant
    now: Optional[datetime] = None

@router.post("/tick")
async def trigger_tick(
    session_factory: SessionFactory,
    registry: Registry,
    broker: Broker,
    payload: Optional[TickRequest] = None,
):
    report = await run_tick(
        session_factory, now=payload.now if payload else None, registry=registry, broker=broker
    )
    return report.as_dict()

@router.post("/maintenance")
async def trigger_maintenance(session: DbSession, broker: Broker):
    reaped = await reap_stale_jobs(session)
    promoted = await promote_retrying_jobs(session)
    await session.commit()
    await dispatch_alerts(session)
    if reaped or promoted:
        broker.notify()
    return {"reaped": reaped, "promoted": promoted}

class TenantCreate(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str
    api_key: Optional[str] = None
    plan_tier: str = "standard"
    max_inflight: Optional[int] = Field(default=None, ge=1)
    credit_balance: Decimal = Decimal("0")
    daily_credit_cost: Decimal = Decimal("0")

@router.post("/tenants", status_code=status.HTTP_201_CREATED)
async def create_tenant(payload: TenantCreate, session: DbSession):
    try:
        tenant = await create_tenant_command(
            session,
            tenant_id=payload.id,
            name=payload.name,
            api_key=payload.api_key,
            plan_tier=payload.plan_tier,
            max_inflight=payload.max_inflight,
            credit_balance=payload.credit_balance,
            daily_credit_cost=payload.daily_credit_cost,
        )
    except TenantError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await session.commit()
    return {
        "id": tenant.id,
        "name": tenant.name,
        "api_key": tenant.api_key,
        "plan_tier": tenant.plan_tier,
        "max_inflight": tenant.max_inflight,
    }

class SystemScheduleCreate(BaseModel):
    name: str
    cron_expression: str
    job_type: str
    timezone: str = "UTC"
    description: Optional[str] = None
    configuration: dict[str, Any] = Field(default_factory=dict)
    max_failures: Optional[int] = Field(default=None, ge=1)

@router.post("/cron-jobs", status_code=status.HTTP_201_CREATED)
async def create_system_schedule(payload: SystemScheduleCreate, session: DbSession, registry: Registry):
    await ensure_system_tenant(session)
    try:
        cron_job = await schedules.create_cron_job(
            session,
            tenant_id=None,
            name=payload.name,
            cron_expression=payload.cron_expression,
            job_type=payload.job_type,
            timezone_name=payload.timezone,
            description=payload.description,
            configuration=payload.configuration,
            max_failures=payload.max_failures,
            registry=registry,
        )
    except (ScheduleMisconfigured, HandlerNotFound) as e:
        raise HTTPException(status_code=400, detail=str(e))
    await session.commit()
    return {"id": cron_job.id, "next_run_at": cron_job.next_run_at}

@router.post("/cron-jobs/{cron_job_id}/resume")
async def resume_any_schedule(cron_job_id: UUID, session: DbSession):
    """Admins can resume system schedules, which have no tenant key."""
    try:
        cron_job = await schedules.resume_cron_job(session, None, cron_job_id)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await session.commit()
    return {"id": cron_job.id, "next_run_at": cron_job.next_run_at}

@router.post("/cron-jobs/{cron_job_id}/pause")
async def pause_any_schedule(cron_job_id: UUID, session: DbSession, payload: Optional[PauseRequest] = None):
    reason = (payload.reason if payload else None) or "Paused by admin"
    try:
        cron_job = await schedules.pause_cron_job(session, None, cron_job_id, reason=reason)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await session.commit()
    return {"id": cron_job.id, "is_paused": cron_job.is_paused, "paused_reason": cron_job.paused_reason}

@router.post("/cron-jobs/{cron_job_id}/execute", response_model=ExecutionResponse)
async def execute_any_schedule(cron_job_id: UUID, session: DbSession, registry: Registry, broker: Broker):
    try:
        return await schedules.execute_cron_job_now(session, None, cron_job_id, registry=registry, broker=broker)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

@router.get("/cron-jobs/{cron_job_id}/executions", response_model=ExecutionPage)
async def list_any_executions(
    cron_job_id: UUID,
    session: DbSession,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
):
    try:
        items, total = await schedules.list_executions(session, None, cron_job_id, page=page, limit=limit)
    except ScheduleNotFoundError:
        raise HTTPException(status_code=404, detail="Cron job not found")
    return ExecutionPage(
        items=[ExecutionResponse.model_validate(item) for item in items],
        page=page,
        limit=limit,
        total=total,
        totalPages=(total + limit - 1) // limit,
    )
