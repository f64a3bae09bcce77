import logging
import secrets
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.db.models import Tenant
from jobengine.domain.errors import TenantError
from jobengine.settings import settings

logger = logging.getLogger(__name__)

async def create_tenant(
    session: AsyncSession,
    tenant_id: str,
    name: str,
    api_key: Optional[str] = None,
    plan_tier: str = "standard",
    max_inflight: Optional[int] = None,
    credit_balance: Decimal = Decimal("0"),
    daily_credit_cost: Decimal = Decimal("0"),
) -> Tenant:
    """Creates a tenant. A random API key is issued when none is given. Caller commits."""
    if await session.get(Tenant, tenant_id):
        raise TenantError(f"Tenant {tenant_id} already exists")
    if max_inflight is not None and max_inflight < 1:
        raise ValueError("max_inflight must be >= 1")

    tenant = Tenant(
        id=tenant_id,
        name=name,
        api_key=api_key or secrets.token_urlsafe(32),
        plan_tier=plan_tier,
        max_inflight=max_inflight or settings.DEFAULT_TENANT_MAX_INFLIGHT,
        credit_balance=Decimal(credit_balance),
        daily_credit_cost=Decimal(daily_credit_cost),
    )
    session.add(tenant)
    await session.flush()
    logger.info("Created tenant %s (plan=%s, max_inflight=%s)", tenant.id, tenant.plan_tier, tenant.max_inflight)
    return tenant

async def ensure_system_tenant(session: AsyncSession) -> Tenant:
    """The reserved tenant that owns jobs enqueued by system-wide schedules."""
    tenant = await session.get(Tenant, settings.SYSTEM_TENANT_ID)
    if tenant is None:
        tenant = Tenant(
            id=settings.SYSTEM_TENANT_ID,
            name="System",
            api_key=None,
            plan_tier="system",
            max_inflight=settings.DEFAULT_TENANT_MAX_INFLIGHT,
        )
        session.add(tenant)
        await session.flush()
        logger.info("Bootstrapped system tenant %s", tenant.id)
    return tenant

async def get_tenant_by_api_key(session: AsyncSession, api_key: str) -> Optional[Tenant]:
    if not api_key:
        return None
    return await session.scalar(select(Tenant).where(Tenant.api_key == api_key))
