"""
Tenant context plumbing.

The tenant a unit of work belongs to is carried in a ContextVar so that
handler code, store helpers and log records all see the same tenant without
threading it through every call. Each asyncio task gets its own copy, so
concurrent jobs of different tenants in one worker process never leak into
each other.
"""
import contextvars
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from jobengine.domain.errors import TenantError

_current_tenant: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "current_tenant", default=None
)

def get_current_tenant_id() -> Optional[str]:
    return _current_tenant.get()

def require_tenant_id() -> str:
    tenant_id = _current_tenant.get()
    if not tenant_id:
        raise TenantError("No tenant bound to the current context")
    return tenant_id

@contextmanager
def tenant_context(tenant_id: Optional[str]) -> Iterator[Optional[str]]:
    token = _current_tenant.set(tenant_id)
    try:
        yield tenant_id
    finally:
        _current_tenant.reset(token)

class TenantLogFilter(logging.Filter):
    """Stamps every record with the tenant bound to the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "tenant_id"):
            record.tenant_id = _current_tenant.get() or "-"
        return True

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [tenant=%(tenant_id)s] %(message)s"

def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(isinstance(f, TenantLogFilter) for h in root.handlers for f in h.filters):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(TenantLogFilter())
        root.addHandler(handler)
    root.setLevel(level.upper())
