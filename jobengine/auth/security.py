import hmac
import logging
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Security
from fastapi.security import APIKeyHeader

from jobengine.api.deps import DbSession
from jobengine.commands.tenants import get_tenant_by_api_key
from jobengine.db.models import Tenant
from jobengine.settings import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

async def get_current_tenant(
    session: DbSession,
    api_key: str = Security(API_KEY_HEADER)
) -> Tenant:
    if not api_key:
        raise HTTPException(status_code=403, detail="Missing API Key")

    tenant = await get_tenant_by_api_key(session, api_key)

    if not tenant:
        raise HTTPException(status_code=403, detail="Invalid API Key")
    if not tenant.is_active:
        raise HTTPException(status_code=403, detail="Tenant is disabled")

    return tenant

async def verify_admin_key(x_admin_key: Optional[str] = Header(default=None, alias="X-Admin-Key")) -> None:
    """No-op unless ADMIN_API_KEY is configured."""
    if not settings.ADMIN_API_KEY:
        return
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        logger.warning("Rejected admin request with missing or wrong X-Admin-Key")
        raise HTTPException(status_code=403, detail="Invalid admin key")

CurrentTenant = Annotated[Tenant, Depends(get_current_tenant)]
