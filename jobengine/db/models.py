from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean, Date, ForeignKey, Index, Integer, Numeric, String, Text, Uuid, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jobengine.db.session import Base
from jobengine.db.types import JSONType, UTCDateTime, utcnow
from jobengine.domain.states import (
    ExecutionStatus, JobPriority, JobStatus, ScheduleSourceType, TriggerSource,
)
from jobengine.settings import settings

class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    api_key: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Plan tier decides how many of this tenant's jobs may run at once
    plan_tier: Mapped[str] = mapped_column(String, default="standard")
    max_inflight: Mapped[int] = mapped_column(Integer, default=lambda: settings.DEFAULT_TENANT_MAX_INFLIGHT)

    # Billing (daily credit deduction job)
    credit_balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    daily_credit_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    last_credit_deduction_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    jobs: Mapped[list["Job"]] = relationship("Job", back_populates="tenant")

class Job(Base):
    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("tenants.id"), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False)

    # Core orchestration fields
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.PENDING, index=True)
    priority: Mapped[int] = mapped_column(Integer, default=int(JobPriority.NORMAL))

    # Progress, polled by UIs while the job runs
    progress: Mapped[int] = mapped_column(Integer, default=0)
    progress_message: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Scheduling fields
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
    available_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Retry logic
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=lambda: settings.DEFAULT_MAX_RETRIES)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Claim (single owner while running)
    claimed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    claim_token: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)

    # Payload
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    result: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="jobs")

    __table_args__ = (
        # Dispatch order: status=pending, then priority rank, then FIFO
        Index(
            "ix_jobs_dispatch", "status", "priority", "created_at",
            postgresql_where=text("status = 'pending'"),
        ),
        Index("ix_jobs_tenant_status", "tenant_id", "status"),
        Index(
            "ix_jobs_retry_due", "next_attempt_at",
            postgresql_where=text("status = 'retrying'"),
        ),
    )

class CronJob(Base):
    __tablename__ = "cron_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    # NULL for system-wide schedules
    tenant_id: Mapped[Optional[str]] = mapped_column(String, ForeignKey("tenants.id"), index=True, nullable=True)

    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cron_expression: Mapped[str] = mapped_column(String, nullable=False)
    timezone: Mapped[str] = mapped_column(String, default="UTC")
    job_type: Mapped[str] = mapped_column(String, nullable=False)
    configuration: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    priority: Mapped[int] = mapped_column(Integer, default=int(JobPriority.NORMAL))
    max_retries: Mapped[int] = mapped_column(Integer, default=lambda: settings.DEFAULT_MAX_RETRIES)

    # Ownership
    source_type: Mapped[ScheduleSourceType] = mapped_column(String, default=ScheduleSourceType.USER)
    source_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, default=False)

    # Lifecycle
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_paused: Mapped[bool] = mapped_column(Boolean, default=False)
    paused_reason: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    max_failures: Mapped[int] = mapped_column(Integer, default=lambda: settings.CRON_MAX_CONSECUTIVE_FAILURES)
    max_runs: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    run_once: Mapped[bool] = mapped_column(Boolean, default=False)

    # Run statistics
    last_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    next_run_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0)
    last_status: Mapped[Optional[ExecutionStatus]] = mapped_column(String, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)

    executions: Mapped[list["CronJobExecution"]] = relationship("CronJobExecution", back_populates="cron_job")

    __table_args__ = (
        Index(
            "ix_cron_jobs_due", "is_active", "next_run_at",
            postgresql_where=text("is_active"),
        ),
    )

class CronJobExecution(Base):
    __tablename__ = "cron_job_executions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    cron_job_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("cron_jobs.id"), index=True, nullable=False)
    tenant_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    # Job enqueued by this firing (queued job types only)
    job_id: Mapped[Optional[UUID]] = mapped_column(Uuid, ForeignKey("jobs.id", ondelete="SET NULL"), index=True, nullable=True)

    triggered_by: Mapped[TriggerSource] = mapped_column(String, default=TriggerSource.SCHEDULER)
    status: Mapped[ExecutionStatus] = mapped_column(String, default=ExecutionStatus.RUNNING)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    output: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    cron_job: Mapped["CronJob"] = relationship("CronJob", back_populates="executions")
