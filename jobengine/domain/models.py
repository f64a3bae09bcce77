from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any
from uuid import UUID

from jobengine.domain.states import JobStatus

@dataclass(frozen=True)
class JobSnapshot:
    """Read-only view of a claimed job handed to handlers."""
    id: UUID
    tenant_id: str
    type: str
    payload: dict[str, Any]
    priority: int
    status: JobStatus
    attempt_count: int = 0
    max_retries: int = 3
    claim_token: Optional[UUID] = None
    progress: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, job) -> "JobSnapshot":
        return cls(
            id=job.id,
            tenant_id=job.tenant_id,
            type=job.type,
            payload=dict(job.payload or {}),
            priority=job.priority,
            status=JobStatus(job.status),
            attempt_count=job.attempt_count,
            max_retries=job.max_retries,
            claim_token=job.claim_token,
            progress=job.progress or 0,
            metadata=dict(job.meta or {}),
            created_at=job.created_at,
            started_at=job.started_at,
        )

@dataclass
class JobStatusView:
    id: UUID
    type: str
    status: JobStatus
    progress: int
    progress_message: Optional[str]
    result: Optional[dict[str, Any]]
    error: Optional[str]
