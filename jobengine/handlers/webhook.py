import logging
import time
from typing import Any, ClassVar, Optional

import httpx

from jobengine.domain.errors import PermanentExecutionError, TransientExecutionError
from jobengine.handlers.base import JobHandler
from jobengine.settings import settings

logger = logging.getLogger(__name__)

USER_AGENT = "jobengine-webhook/1.0"
BODY_METHODS = {"POST", "PUT", "PATCH"}
RETRYABLE_STATUS = {408, 425, 429}

class WebhookHandler(JobHandler):
    """
    Calls an HTTP endpoint described by the payload:
    ``url``, ``method`` (GET), ``headers``, ``body``, ``timeout`` (seconds).

    Connection problems, timeouts, 5xx, 408 and 429 are retried; other 4xx
    responses mean the request itself is wrong and fail the job.
    """
    description = "HTTP call to a configured URL"

    # Swapped out in tests (httpx.MockTransport)
    transport: ClassVar[Optional[httpx.AsyncBaseTransport]] = None

    async def execute(self, job, context):
        config = job.payload
        url = config.get("url")
        if not url:
            raise PermanentExecutionError("Webhook url is required")

        method = str(config.get("method") or "GET").upper()
        headers = {"User-Agent": USER_AGENT, **(config.get("headers") or {})}
        timeout = float(config.get("timeout") or settings.WEBHOOK_TIMEOUT_SECONDS)

        request_kwargs: dict[str, Any] = {"headers": headers}
        body = config.get("body")
        if body is not None and method in BODY_METHODS:
            if isinstance(body, str):
                request_kwargs["content"] = body
            else:
                request_kwargs["json"] = body

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            raise TransientExecutionError(f"Webhook {method} {url} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise TransientExecutionError(f"Webhook {method} {url} failed: {e}") from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if response.status_code >= 500 or response.status_code in RETRYABLE_STATUS:
            raise TransientExecutionError(f"Webhook {method} {url} returned {response.status_code}")
        if response.status_code >= 400:
            raise PermanentExecutionError(f"Webhook {method} {url} returned {response.status_code}")

        logger.info("Webhook %s %s -> %s in %sms", method, url, response.status_code, elapsed_ms)
        return {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "data": _decode_body(response),
            "responseTimeMs": elapsed_ms,
        }

def _decode_body(response: httpx.Response) -> Any:
    if "application/json" in response.headers.get("content-type", ""):
        try:
            return response.json()
        except ValueError:
            pass
    text = response.text
    return text[:4096] if text else None
