# chatpush/transport/security.py
"""
Caller authentication for the direct-call API.

Callers share API_TOKEN with the service and present it either as a
Bearer token or as an HMAC signature over the request (the secret never
leaves the caller). Comparisons are constant-time.

``get_auth_context`` never raises: it resolves the caller to an
``AuthContext`` or ``None`` and leaves the decision to the handler, so the
notification endpoint reports UNAUTHENTICATED with its own error body.
"""
import hmac
import hashlib
import time

from fastapi import Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from chatpush.config import settings
from chatpush.core.domain import AuthContext
from chatpush.core.errors import UnauthenticatedError
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)

# 32 bytes = 256 bits
MIN_TOKEN_LENGTH = 32
DEFAULT_CALLER_ID = "api-client"

# Signed requests older than this are rejected (replay window)
HMAC_MAX_AGE_SECONDS = 300

bearer_scheme = HTTPBearer(
    scheme_name="API Token",
    description="API_TOKEN, sent as 'Authorization: Bearer <token>'",
    auto_error=False,
)


def check_configured_tokens() -> None:
    """Startup warning for a short API_TOKEN."""
    token = settings.api_token
    if token and len(token) < MIN_TOKEN_LENGTH:
        logger.warning(f"SECURITY: API_TOKEN is {len(token)} chars; use at least {MIN_TOKEN_LENGTH}")


def compute_request_signature(
    secret: str,
    timestamp: str,
    method: str,
    path: str,
    body: bytes = b"",
) -> str:
    """Hex HMAC-SHA256 of ``timestamp.METHOD.path.sha256(body)``."""
    signing_string = f"{timestamp}.{method.upper()}.{path}.{hashlib.sha256(body).hexdigest()}"
    return hmac.new(secret.encode(), signing_string.encode(), hashlib.sha256).hexdigest()


def verify_request_signature(
    secret: str,
    timestamp: str,
    signature: str,
    method: str,
    path: str,
    body: bytes = b"",
) -> tuple[bool, str | None]:
    """Returns (is_valid, error_message)."""
    try:
        age = abs(int(time.time()) - int(timestamp))
    except ValueError:
        return False, "Invalid timestamp format"

    if age > HMAC_MAX_AGE_SECONDS:
        return False, f"Request expired (age: {age}s, max: {HMAC_MAX_AGE_SECONDS}s)"

    expected = compute_request_signature(secret, timestamp, method, path, body)
    if not hmac.compare_digest(signature.encode(), expected.encode()):
        return False, "Invalid signature"

    return True, None


async def _bearer_error(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str | None:
    if not credentials:
        return "Missing Authorization header"
    if not hmac.compare_digest(credentials.credentials.encode(), settings.api_token.encode()):
        return "Invalid token"
    return None


async def _hmac_error(request: Request, credentials: HTTPAuthorizationCredentials | None) -> str | None:
    timestamp = request.headers.get("X-Timestamp")
    signature = request.headers.get("X-Signature")
    if not timestamp or not signature:
        return "Missing X-Timestamp or X-Signature headers"

    # Starlette caches the body, so the route can still read it
    body = await request.body() if request.method in ("POST", "PUT", "PATCH") else b""
    _, error = verify_request_signature(
        settings.api_token, timestamp, signature, request.method, request.url.path, body
    )
    return error


# API_AUTH_MODE -> schemes tried in order
_SCHEMES = {
    "bearer": (("bearer", _bearer_error),),
    "hmac": (("hmac", _hmac_error),),
    "both": (("bearer", _bearer_error), ("hmac", _hmac_error)),
}


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthContext | None:
    """
    Resolve the caller, or None when no accepted scheme verifies.

    API_AUTH_MODE picks the schemes: "bearer" (Authorization: Bearer
    <token>), "hmac" (X-Timestamp + X-Signature, see
    scripts/sign_request.py) or "both". The optional X-Caller-ID header
    names the caller in logs.
    """
    if not settings.api_token:
        logger.critical("API_TOKEN not configured but authenticated endpoint accessed")
        return None

    errors = {}
    for name, check in _SCHEMES.get(settings.api_auth_mode, ()):
        error = await check(request, credentials)
        if error is None:
            logger.debug(f"{name} auth ok for {request.method} {request.url.path}")
            return AuthContext(caller_id=request.headers.get("X-Caller-ID") or DEFAULT_CALLER_ID, method=name)
        errors[name] = error

    logger.warning(
        f"Auth failed ({settings.api_auth_mode}): {errors}",
        extra={"path": request.url.path},
    )
    return None


async def require_api_auth(auth: AuthContext | None = Depends(get_auth_context)) -> AuthContext:
    """
    Dependency for operational endpoints (/metrics, /health/detailed).

    Usage:
        @app.get("/metrics", dependencies=[Depends(require_api_auth)])
    """
    if auth is None:
        raise UnauthenticatedError("Authentication required")
    return auth
