"""
Catalog batch jobs.

The engine does not know how products are stored; a `CatalogGateway`
registered at startup does the actual reads and writes. The handlers only
batch, checkpoint and report progress.
"""
import logging
from typing import Any, Optional

from jobengine.domain.errors import PermanentExecutionError
from jobengine.handlers.base import BatchJobHandler

logger = logging.getLogger(__name__)

class CatalogGateway:
    """Interface of the catalog collaborator. Methods return per-batch counts."""

    async def import_items(self, tenant_id: str, items: list[dict[str, Any]], options: dict[str, Any]) -> dict[str, int]:
        raise NotImplementedError

    async def list_export_items(self, tenant_id: str, options: dict[str, Any]) -> list[Any]:
        raise NotImplementedError

    async def export_items(self, tenant_id: str, items: list[Any], options: dict[str, Any]) -> dict[str, int]:
        raise NotImplementedError

    async def translate_items(
        self, tenant_id: str, items: list[Any], languages: list[str], options: dict[str, Any]
    ) -> dict[str, int]:
        raise NotImplementedError

_gateway: Optional[CatalogGateway] = None

def set_catalog_gateway(gateway: Optional[CatalogGateway]) -> None:
    global _gateway
    _gateway = gateway

def get_catalog_gateway() -> CatalogGateway:
    if _gateway is None:
        raise PermanentExecutionError("No catalog gateway configured")
    return _gateway

def _options(payload: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in ("items", "batch_size")}

class CatalogImportHandler(BatchJobHandler):
    description = "Import products into a tenant catalog"

    async def process_batch(self, batch, job, context):
        return await get_catalog_gateway().import_items(job.tenant_id, batch, _options(job.payload))

class CatalogExportHandler(BatchJobHandler):
    description = "Export a tenant catalog"
    batch_size = 200

    async def load_items(self, job, context):
        if "items" in job.payload:
            return await super().load_items(job, context)
        return await get_catalog_gateway().list_export_items(job.tenant_id, _options(job.payload))

    async def process_batch(self, batch, job, context):
        return await get_catalog_gateway().export_items(job.tenant_id, batch, _options(job.payload))

class BulkTranslationHandler(BatchJobHandler):
    description = "Translate catalog entities into one or more languages"
    batch_size = 20

    async def execute(self, job, context):
        languages = job.payload.get("target_languages") or []
        if not languages:
            raise PermanentExecutionError("target_languages is required")
        return await super().execute(job, context)

    async def process_batch(self, batch, job, context):
        options = _options(job.payload)
        languages = list(options.pop("target_languages"))
        return await get_catalog_gateway().translate_items(job.tenant_id, batch, languages, options)
