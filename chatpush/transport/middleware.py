# chatpush/transport/middleware.py
"""
HTTP middleware, outermost first as registered in http_app:

RequestIDMiddleware -> RequestLoggingMiddleware -> ErrorHandlingMiddleware
-> SecurityHeadersMiddleware -> routes
"""
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from chatpush.config import settings
from chatpush.core.errors import InternalError
from chatpush.infra.logging_config import LogContext, get_logger

logger = get_logger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Honour an incoming X-Request-ID or mint one; echo it on the response."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        response = await call_next(request)
        response.headers["X-Request-ID"] = request.state.request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    def __init__(self, app: ASGIApp, enabled: bool = True):
        super().__init__(app)
        self.enabled = enabled

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled:
            return await call_next(request)

        log = LogContext(logger, request_id=_request_id(request))
        route = f"{request.method} {request.url.path}"
        fields = {"method": request.method, "path": request.url.path}
        log.info(
            f"Request started: {route}",
            extra={**fields, "client_ip": request.client.host if request.client else None},
        )

        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.monotonic() - started) * 1000
            log.exception(
                f"Request failed: {route} error={exc.__class__.__name__} duration={duration_ms:.2f}ms",
                extra={**fields, "error_type": exc.__class__.__name__, "duration_ms": duration_ms},
            )
            raise

        duration_ms = (time.monotonic() - started) * 1000
        log.info(
            f"Request completed: {route} status={response.status_code} duration={duration_ms:.2f}ms",
            extra={**fields, "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Unhandled exceptions become a 500 with the standard error body."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = _request_id(request)
            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            error = InternalError("Internal server error")
            return JSONResponse(
                status_code=error.status_code,
                content={**error.to_dict(), "request_id": request_id},
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """JSON-only API responses are never framed or cached."""

    HEADERS = {
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "no-referrer",
        "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers.update(self.HEADERS)
        response.headers.setdefault("Cache-Control", "no-store")
        # HTTPS terminates in front of staging and production only
        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response
