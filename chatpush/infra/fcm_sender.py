# chatpush/infra/fcm_sender.py
"""
Firebase Cloud Messaging (HTTP v1) push sender.

One request per device token:
    POST https://fcm.googleapis.com/v1/projects/<project>/messages:send
    {"message": {"token": "<token>", ...payload}}

Error classification (DeliveryFailure flags):
- UNREGISTERED / NOT_FOUND      → unregistered (token expired or app removed)
- INVALID_ARGUMENT on the token → unregistered (malformed registration token)
- 401 / 403 auth failures       → not retryable; cached access token dropped
- 429 QUOTA_EXCEEDED            → retryable
- 5xx UNAVAILABLE / INTERNAL    → retryable
- Network / timeout             → retryable

Access tokens come from a service account via google-auth and are cached
until they expire.

HTTP session lifecycle:
- Uses the shared sender session from chatpush.infra.http_client.
- The app lifespan closes it (close_sender_session) on shutdown.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import aiohttp
import google.auth.transport.requests
from google.oauth2 import service_account

from chatpush.core.errors import DeliveryFailure
from chatpush.core.ports import PushProvider
from chatpush.infra.http_client import get_sender_session
from chatpush.infra.logging_config import get_logger, mask_token
from chatpush.infra.metrics import inc_counter

logger = get_logger(__name__)

FCM_SCOPES = ["https://www.googleapis.com/auth/firebase.messaging"]
FCM_ENDPOINT = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

_UNREGISTERED_CODES = {"UNREGISTERED", "NOT_FOUND"}
_RETRYABLE_CODES = {"QUOTA_EXCEEDED", "UNAVAILABLE", "INTERNAL"}


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class FcmCredentials:
    """OAuth2 access tokens for the FCM API from a service account key."""

    def __init__(
        self,
        credentials_json: str | None = None,
        credentials_file: str | None = None,
    ) -> None:
        if not credentials_json and not credentials_file:
            raise ValueError("FCM credentials require credentials_json or credentials_file")
        self._credentials_json = credentials_json
        self._credentials_file = credentials_file
        self._credentials: service_account.Credentials | None = None
        self._lock = asyncio.Lock()

    def _load(self) -> service_account.Credentials:
        try:
            if self._credentials_json:
                info = json.loads(self._credentials_json)
                return service_account.Credentials.from_service_account_info(info, scopes=FCM_SCOPES)
            return service_account.Credentials.from_service_account_file(
                self._credentials_file, scopes=FCM_SCOPES,
            )
        except json.JSONDecodeError as e:
            logger.error(f"Invalid service account JSON: {e}")
            raise ValueError("Invalid credentials JSON") from e

    async def get_access_token(self) -> str:
        async with self._lock:
            if self._credentials is None:
                self._credentials = self._load()
            if not self._credentials.valid:
                # google-auth refresh is blocking (requests)
                await asyncio.to_thread(
                    self._credentials.refresh,
                    google.auth.transport.requests.Request(),
                )
                logger.debug("FCM access token refreshed")
            return self._credentials.token

    def invalidate(self) -> None:
        """Force a refresh on next use (after a 401 from FCM)."""
        if self._credentials is not None:
            self._credentials.token = None


# ---------------------------------------------------------------------------
# Error parsing
# ---------------------------------------------------------------------------

def _fcm_error_code(error: dict[str, Any]) -> str | None:
    """The FcmError detail code, falling back to the google.rpc status."""
    for detail in error.get("details") or []:
        if isinstance(detail, dict) and detail.get("errorCode"):
            return detail["errorCode"]
    return error.get("status")


def classify_error(status: int, body: dict[str, Any] | None) -> DeliveryFailure:
    """Map an FCM error response to a DeliveryFailure."""
    error = (body or {}).get("error") or {}
    error_code = _fcm_error_code(error)
    message = error.get("message", "Unknown error")

    if error_code in _UNREGISTERED_CODES or status == 404:
        return DeliveryFailure(status, error_code, message, unregistered=True)

    if error_code == "INVALID_ARGUMENT" and "registration token" in message.lower():
        return DeliveryFailure(status, error_code, message, unregistered=True)

    if status == 429 or status >= 500 or error_code in _RETRYABLE_CODES:
        return DeliveryFailure(status, error_code, message, retryable=True)

    return DeliveryFailure(status, error_code, message)


# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------

class FcmSender(PushProvider):
    """PushProvider over the FCM HTTP v1 API."""

    def __init__(
        self,
        project_id: str,
        credentials: FcmCredentials,
        *,
        session_factory: Callable[[], aiohttp.ClientSession] = get_sender_session,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._url = FCM_ENDPOINT.format(project_id=project_id)
        self._credentials = credentials
        self._session_factory = session_factory
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    async def send(self, token: str, payload: dict[str, Any]) -> str:
        """
        Send one message to one device token.

        Returns:
            FCM message name (``projects/<p>/messages/<id>``)

        Raises:
            DeliveryFailure: On any failure (check .unregistered / .retryable)
        """
        message = {"token": token, **payload}

        try:
            access_token = await self._credentials.get_access_token()
        except Exception as exc:
            logger.error(f"FCM credentials error: {exc.__class__.__name__}: {exc}")
            inc_counter("fcm_auth_error")
            raise DeliveryFailure(0, "AUTH", f"{exc.__class__.__name__}: {exc}") from exc

        try:
            session = self._session_factory()
            async with session.post(
                self._url,
                json={"message": message},
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json; UTF-8",
                },
                timeout=self._timeout,
            ) as resp:
                body = await _safe_response_json(resp)

                if resp.status == 200 and body is not None:
                    name = body.get("name", "unknown")
                    logger.debug(f"FCM message sent: token={mask_token(token)}, name={name}")
                    inc_counter("fcm_sent")
                    return name

                if resp.status == 401:
                    self._credentials.invalidate()

                failure = classify_error(resp.status, body)
                inc_counter(
                    "fcm_send_failed",
                    kind="unregistered" if failure.unregistered else (
                        "retryable" if failure.retryable else "rejected"
                    ),
                )
                raise failure

        except DeliveryFailure:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning(f"FCM connection error: {exc.__class__.__name__}, token={mask_token(token)}")
            inc_counter("fcm_connection_error")
            raise DeliveryFailure(0, None, exc.__class__.__name__, retryable=True) from exc


async def _safe_response_json(resp: aiohttp.ClientResponse) -> dict | None:
    """Parse JSON from response, returning None if body is not valid JSON."""
    try:
        return await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, json.JSONDecodeError, ValueError):
        logger.warning(f"FCM returned non-JSON body: status={resp.status}")
        return None


class UnconfiguredPushProvider(PushProvider):
    """Used when FCM settings are absent: the service runs, every send fails."""

    async def send(self, token: str, payload: dict[str, Any]) -> str:
        inc_counter("fcm_send_failed", kind="not_configured")
        raise DeliveryFailure(0, "NOT_CONFIGURED", "FCM is not configured")
