"""
Job type registry: maps a job type string to its handler class.

Built-in types are registered at process start; plugins add their own under
``plugin:<plugin_id>:<action>``.
"""
import inspect
import logging
import re
from typing import Callable, Iterable, Iterator, Optional, Union

from jobengine.domain.errors import ConfigurationError, HandlerNotFound
from jobengine.handlers.base import FunctionHandler, HandlerFunc, JobHandler

logger = logging.getLogger(__name__)

TYPE_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*(:[a-z0-9][a-z0-9_.-]*)+$", re.IGNORECASE)
PLUGIN_TYPE_PATTERN = re.compile(r"^plugin:[a-z0-9][a-z0-9_-]*:[a-z0-9][a-z0-9_.-]*$", re.IGNORECASE)

HandlerSpec = Union[type[JobHandler], HandlerFunc]

def plugin_job_type(plugin_id: str, action: str) -> str:
    return f"plugin:{plugin_id}:{action}"

class JobTypeRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, type[JobHandler]] = {}

    def register(self, job_type: str, handler: HandlerSpec, *, inline: Optional[bool] = None, replace: bool = False) -> type[JobHandler]:
        if not TYPE_PATTERN.match(job_type or ""):
            raise ConfigurationError(f"Invalid job type '{job_type}': expected '<namespace>:<action>'")
        if job_type.lower().startswith("plugin:") and not PLUGIN_TYPE_PATTERN.match(job_type):
            raise ConfigurationError(f"Invalid plugin job type '{job_type}': expected 'plugin:<id>:<action>'")
        if job_type in self._handlers and not replace:
            raise ConfigurationError(f"Job type '{job_type}' is already registered")

        if inspect.isclass(handler) and issubclass(handler, JobHandler):
            handler_cls = handler
            if inline is not None and inline != handler_cls.inline:
                handler_cls = type(handler_cls.__name__, (handler_cls,), {"inline": inline})
        elif callable(handler) and not inspect.isclass(handler):
            handler_cls = FunctionHandler.wrap(handler, inline=bool(inline))
        else:
            raise ConfigurationError(f"Handler for '{job_type}' must be a JobHandler subclass or coroutine function")

        self._handlers[job_type] = handler_cls
        logger.debug("Registered job type: %s (%s)", job_type, "inline" if handler_cls.inline else "queued")
        return handler_cls

    def job_type(self, job_type: str, *, inline: Optional[bool] = None) -> Callable[[HandlerSpec], HandlerSpec]:
        """Decorator form of register()."""
        def decorator(handler: HandlerSpec) -> HandlerSpec:
            self.register(job_type, handler, inline=inline)
            return handler
        return decorator

    def register_plugin_action(self, plugin_id: str, action: str, handler: HandlerSpec, *, inline: bool = False) -> str:
        job_type = plugin_job_type(plugin_id, action)
        self.register(job_type, handler, inline=inline, replace=True)
        return job_type

    def unregister_plugin(self, plugin_id: str) -> list[str]:
        prefix = f"plugin:{plugin_id}:"
        removed = [t for t in self._handlers if t.startswith(prefix)]
        for job_type in removed:
            del self._handlers[job_type]
        return removed

    def resolve(self, job_type: str) -> type[JobHandler]:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise HandlerNotFound(job_type) from None

    def create(self, job_type: str) -> JobHandler:
        return self.resolve(job_type)()

    def is_registered(self, job_type: str) -> bool:
        return job_type in self._handlers

    def is_inline(self, job_type: str) -> bool:
        return self.resolve(job_type).inline

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def verify(self, job_types: Iterable[str]) -> set[str]:
        """Returns the configured job types that have no handler."""
        missing = {t for t in job_types if t not in self._handlers}
        for job_type in sorted(missing):
            logger.error("Configured job type '%s' has no registered handler", job_type)
        return missing

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self.types())

    def __len__(self) -> int:
        return len(self._handlers)

_default_registry: Optional[JobTypeRegistry] = None

def get_registry() -> JobTypeRegistry:
    """Process-wide registry with the built-in job types loaded."""
    global _default_registry
    if _default_registry is None:
        from jobengine.handlers import register_builtin_handlers

        registry = JobTypeRegistry()
        register_builtin_handlers(registry)
        _default_registry = registry
        logger.info("Registered %d built-in job types", len(registry))
    return _default_registry
