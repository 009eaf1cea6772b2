# chatpush/transport/http_app.py
"""
HTTP surface of the notification dispatcher.

Endpoints:
1. Public: GET /health (liveness), GET /ready (database reachable)
2. Authenticated: POST /v1/notifications/send (direct send)
3. Authenticated: GET /health/detailed, GET /metrics

With RUN_MODE=all|worker the lifespan also runs the job worker that
consumes chat_message_created jobs enqueued by the messages trigger.
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatpush.bootstrap import Container, build_container
from chatpush.config import settings, warn_on_risky_config
from chatpush.core.domain import AuthContext
from chatpush.core.errors import DispatchError, InvalidArgumentError
from chatpush.core.models import NotificationSendIn
from chatpush.infra.db_async import close_pool, init_pool
from chatpush.infra.health_checks_async import get_async_health_checker
from chatpush.infra.http_client import close_sender_session
from chatpush.infra.logging_config import setup_logging, get_logger
from chatpush.infra.metrics import get_metrics_collector
from chatpush.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
    SecurityHeadersMiddleware,
)
from chatpush.transport.schemas import ErrorOut, NotificationSendOut
from chatpush.transport.security import (
    check_configured_tokens,
    get_auth_context,
    require_api_auth,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_container(request: Request) -> Container:
    """Get the wired handlers from app state"""
    return request.app.state.container


async def _start_job_worker(container: Container):
    from chatpush.infra.job_worker import (
        CHAT_MESSAGE_CREATED,
        JobWorker,
        make_chat_message_job_handler,
    )
    from chatpush.infra.pg_job_repo_async import AsyncPostgresJobRepository

    job_worker = JobWorker(
        repo=AsyncPostgresJobRepository(),
        poll_interval=settings.job_worker_poll_interval,
        batch_size=settings.job_worker_batch_size,
        base_retry_delay=settings.job_worker_base_retry_delay,
        stale_timeout=settings.job_worker_stale_timeout,
    )
    job_worker.register(CHAT_MESSAGE_CREATED, make_chat_message_job_handler(container.chat_handler))
    await job_worker.start()
    return job_worker


def _check_startup_config() -> None:
    """Refuse to boot a misconfigured production instance; warn elsewhere."""
    if settings.is_production:
        problems = [f"missing {name}" for name in settings.validate_required_for_production()]
        if settings.log_level.upper() == "DEBUG":
            problems.append("LOG_LEVEL=DEBUG")
        if problems:
            logger.critical(f"Refusing to start in production: {', '.join(problems)}")
            raise RuntimeError(f"Invalid production config: {problems}")

    for warning in warn_on_risky_config(settings):
        logger.warning(f"CONFIG: {warning}")
    check_configured_tokens()


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    logger.info(f"Starting chatpush: env={settings.app_env}, run_mode={settings.run_mode}")
    _check_startup_config()

    # Schema changes are applied separately: python -m chatpush.infra.migrate
    await init_pool()
    container = build_container(settings)
    fastapi_app.state.container = container

    # Only "all" or "worker" processes consume jobs
    job_worker = None
    if settings.run_mode not in ("all", "worker"):
        logger.info(f"Job worker skipped (run_mode={settings.run_mode})")
    elif not settings.job_worker_enabled:
        logger.info("Job worker skipped (job_worker_enabled=false)")
    else:
        job_worker = await _start_job_worker(container)

    logger.info("Startup complete")
    try:
        yield
    finally:
        logger.info("Shutting down")
        if job_worker is not None:
            await job_worker.stop()
        await close_sender_session()
        await close_pool()
        logger.info("Shutdown complete")


app = FastAPI(
    title="chatpush",
    description="Push notification fan-out for community chat",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    _cors = {
        "allow_origins": [o for o in settings.allowed_origins if o != "*"],
        "allow_methods": ["GET", "POST"],
        "allow_headers": ["Content-Type", "Authorization", "X-Timestamp", "X-Signature", "X-Caller-ID"],
    }
else:
    _cors = {"allow_origins": ["*"], "allow_methods": ["*"], "allow_headers": ["*"]}

# Last added runs first: request id, logging, error mapping, headers
app.add_middleware(CORSMiddleware, allow_credentials=False, **_cors)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Typed handler errors -> {"error": {"status", "message", "reason"?}}"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.message}", extra={"status_code": exc.status_code})
    else:
        logger.info(f"Request rejected: {exc.code.value}: {exc.message}")

    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"status": "NOT_FOUND" if exc.status_code == 404 else "ERROR",
                           "message": str(exc.detail)}},
        headers=exc.headers,
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness: the process answers."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness: critical checks only."""
    result = await get_async_health_checker().run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(status_code=503, content={"status": "unhealthy"})

    return {"status": "healthy"}


# ============================================================================
# DIRECT SEND
# ============================================================================

async def _read_json(request: Request):
    if not await request.body():
        return None
    try:
        return await request.json()
    except ValueError as exc:
        raise InvalidArgumentError("Request body must be valid JSON", reason="invalid_json") from exc


@app.post(
    "/v1/notifications/send",
    response_model=NotificationSendOut,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorOut}, 401: {"model": ErrorOut}, 500: {"model": ErrorOut}},
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {"application/json": {"schema": NotificationSendIn.model_json_schema()}},
        }
    },
)
async def send_notification(
    request: Request,
    auth: AuthContext | None = Depends(get_auth_context),
    container: Container = Depends(get_container),
):
    """
    Send a notification to an explicit list of users.

    Body: {"userIds": [...], "title": "...", "body": "...", "data": {...}}
    Unauthenticated callers are rejected before the body is looked at.
    """
    data = await _read_json(request) if auth is not None else None
    return await container.direct_handler.handle(data, auth)


# ============================================================================
# MONITORING ENDPOINTS (API auth)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_api_auth)])
async def detailed_health():
    """Detailed health: database tables and job queue backlog."""
    return await get_async_health_checker().run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_api_auth)])
def metrics():
    """In-process counters and histograms."""
    return get_metrics_collector().get_metrics()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chatpush.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
