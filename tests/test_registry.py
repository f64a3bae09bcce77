import pytest

from jobengine.domain.errors import ConfigurationError, HandlerNotFound
from jobengine.handlers import BUILTIN_HANDLERS, register_builtin_handlers
from jobengine.handlers.base import FunctionHandler, JobHandler
from jobengine.registry import JobTypeRegistry, plugin_job_type


class NoopHandler(JobHandler):
    async def execute(self, job, context):
        return {}


def test_builtin_handlers_registered():
    registry = JobTypeRegistry()
    register_builtin_handlers(registry)

    assert set(registry.types()) == set(BUILTIN_HANDLERS)
    assert registry.is_inline("system:token_refresh")
    assert registry.is_inline("system:cleanup")
    assert not registry.is_inline("system:webhook")
    assert not registry.is_inline("system:daily_credit_deduction")


def test_register_and_resolve():
    registry = JobTypeRegistry()
    registry.register("reports:build", NoopHandler)

    assert "reports:build" in registry
    assert registry.resolve("reports:build") is NoopHandler
    assert isinstance(registry.create("reports:build"), NoopHandler)
    assert len(registry) == 1


def test_unknown_type_raises_handler_not_found():
    registry = JobTypeRegistry()
    with pytest.raises(HandlerNotFound) as exc:
        registry.resolve("reports:missing")
    assert exc.value.job_type == "reports:missing"


def test_duplicate_registration_rejected_unless_replaced():
    registry = JobTypeRegistry()
    registry.register("reports:build", NoopHandler)

    with pytest.raises(ConfigurationError, match="already registered"):
        registry.register("reports:build", NoopHandler)

    registry.register("reports:build", NoopHandler, inline=True, replace=True)
    assert registry.is_inline("reports:build")


@pytest.mark.parametrize("job_type", ["build", "reports:", ":build", "reports build", "plugin:only"])
def test_invalid_type_names(job_type):
    with pytest.raises(ConfigurationError):
        JobTypeRegistry().register(job_type, NoopHandler)


def test_decorator_wraps_coroutine_function():
    registry = JobTypeRegistry()

    @registry.job_type("mail:send", inline=True)
    async def send(job, context):
        """Sends one email."""
        return {"sent": True}

    handler_cls = registry.resolve("mail:send")
    assert issubclass(handler_cls, FunctionHandler)
    assert handler_cls.inline
    assert handler_cls.description == "Sends one email."


def test_plugin_actions_register_and_unregister():
    registry = JobTypeRegistry()
    job_type = registry.register_plugin_action("shopify", "sync.orders", NoopHandler)
    registry.register_plugin_action("shopify", "sync.products", NoopHandler)

    assert job_type == plugin_job_type("shopify", "sync.orders") == "plugin:shopify:sync.orders"
    # Re-registering a plugin action replaces it
    registry.register_plugin_action("shopify", "sync.orders", NoopHandler, inline=True)
    assert registry.is_inline(job_type)

    assert sorted(registry.unregister_plugin("shopify")) == [
        "plugin:shopify:sync.orders",
        "plugin:shopify:sync.products",
    ]
    assert len(registry) == 0


def test_verify_reports_missing_types():
    registry = JobTypeRegistry()
    registry.register("reports:build", NoopHandler)

    assert registry.verify(["reports:build", "reports:gone", "plugin:old:action"]) == {
        "reports:gone",
        "plugin:old:action",
    }


async def _collect(calls, percent, message):
    calls.append((percent, message))


@pytest.mark.asyncio
async def test_progress_callbacks_sync_and_async():
    handler = NoopHandler()
    calls = []
    handler.on_progress(lambda percent, message: calls.append(("sync", percent)))
    handler.on_progress(lambda percent, message: _collect(calls, percent, message))

    await handler.notify_progress(40, "loading")

    assert calls == [("sync", 40), (40, "loading")]
