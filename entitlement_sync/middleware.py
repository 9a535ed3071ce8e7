"""FastAPI middleware for request/response logging and correlation."""

import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from entitlement_sync.logging_config import bind_context, clear_context, get_logger

logger = get_logger(__name__)

# Paths hit by load balancers; logged at DEBUG only
_QUIET_PATHS = frozenset({"/", "/health"})


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each HTTP request with a correlation ID.

    - Reuses an incoming X-Request-ID, otherwise generates one
    - Logs method, path, status code and duration
    - Binds request_id to all logs within the request
    - Echoes X-Request-ID on the response
    """

    def __init__(self, app: ASGIApp, include_request_details: bool = True):
        super().__init__(app)
        self.include_request_details = include_request_details

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        bind_context(request_id=request_id)

        path = request.url.path
        log = logger.debug if path in _QUIET_PATHS else logger.info

        if self.include_request_details:
            log(
                "request_started",
                method=request.method,
                path=path,
                client_host=request.client.host if request.client else "unknown",
                user_agent=request.headers.get("user-agent"),
            )
        else:
            log("request_started", method=request.method, path=path)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
            log(
                "request_completed",
                method=request.method,
                path=path,
                status_code=response.status_code,
                duration_ms=_elapsed_ms(start_time),
            )
            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as exc:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                duration_ms=_elapsed_ms(start_time),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise

        finally:
            clear_context()


class ContextMiddleware(BaseHTTPMiddleware):
    """Binds business context from the request path to the logging context.

    - ``/v1/entitlements/{userId}`` binds user_id
    - ``/v1/webhooks/...`` binds channel=webhook
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        parts = [part for part in request.url.path.split("/") if part]

        if len(parts) >= 3 and parts[:2] == ["v1", "entitlements"] and parts[2] != "sync":
            bind_context(user_id=parts[2])
        elif len(parts) >= 2 and parts[:2] == ["v1", "webhooks"]:
            bind_context(channel="webhook")
        elif parts[:3] == ["v1", "entitlements", "sync"]:
            bind_context(channel="client")

        return await call_next(request)
