from jobengine.handlers.base import BatchJobHandler, FunctionHandler, JobHandler
from jobengine.handlers.catalog import (
    BulkTranslationHandler,
    CatalogExportHandler,
    CatalogGateway,
    CatalogImportHandler,
    set_catalog_gateway,
)
from jobengine.handlers.system import (
    CleanupHandler,
    DailyCreditDeductionHandler,
    TokenRefreshHandler,
    register_token_refresher,
)
from jobengine.handlers.webhook import WebhookHandler

BUILTIN_HANDLERS = {
    "catalog:import": CatalogImportHandler,
    "catalog:export": CatalogExportHandler,
    "translation:bulk": BulkTranslationHandler,
    "system:token_refresh": TokenRefreshHandler,
    "system:daily_credit_deduction": DailyCreditDeductionHandler,
    "system:cleanup": CleanupHandler,
    "system:webhook": WebhookHandler,
}

def register_builtin_handlers(registry) -> None:
    for job_type, handler in BUILTIN_HANDLERS.items():
        registry.register(job_type, handler)

__all__ = [
    "BUILTIN_HANDLERS",
    "BatchJobHandler",
    "BulkTranslationHandler",
    "CatalogExportHandler",
    "CatalogGateway",
    "CatalogImportHandler",
    "CleanupHandler",
    "DailyCreditDeductionHandler",
    "FunctionHandler",
    "JobHandler",
    "TokenRefreshHandler",
    "WebhookHandler",
    "register_builtin_handlers",
    "register_token_refresher",
    "set_catalog_gateway",
]
