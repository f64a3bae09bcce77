from typing import Optional

from fastapi import APIRouter, Query

from jobengine.api.deps import DbSession
from jobengine.auth.security import CurrentTenant
from jobengine.observability.stats import collect_stats

router = APIRouter()

@router.get("/stats")
async def get_stats(
    tenant: CurrentTenant,
    session: DbSession,
    window_hours: Optional[int] = Query(default=24, ge=1, le=24 * 90),
):
    """Success rates, durations and backlog for the calling tenant."""
    return await collect_stats(session, tenant.id, window_hours=window_hours)
