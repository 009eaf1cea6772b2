"""
Closed error taxonomy for the dispatch engine.

``ErrorCode`` values appear in ``ServiceResult.error_code`` and handler
outcomes. The direct-call path raises ``DispatchError`` subtypes; the
transport layer maps them to HTTP responses without embedding business
logic in the route handlers.
"""
from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    NO_RECIPIENTS = "NO_RECIPIENTS"
    DELIVERY_FAILURE = "DELIVERY_FAILURE"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    INTERNAL = "INTERNAL"


class DispatchError(Exception):
    """Base class for errors surfaced to a direct caller."""

    code: ErrorCode = ErrorCode.INTERNAL
    status_code: int = 500

    def __init__(self, message: str = "Internal error", *, reason: str | None = None):
        self.message = message
        self.reason = reason
        super().__init__(message)

    def to_dict(self) -> dict:
        error = {"status": self.code.value, "message": self.message}
        if self.reason:
            error["reason"] = self.reason
        return {"error": error}


class UnauthenticatedError(DispatchError):
    """Caller is not authenticated (401)."""

    code = ErrorCode.UNAUTHENTICATED
    status_code = 401


class InvalidArgumentError(DispatchError):
    """Malformed request payload (400)."""

    code = ErrorCode.INVALID_ARGUMENT
    status_code = 400


class InternalError(DispatchError):
    """Unexpected fault while processing a request (500)."""

    code = ErrorCode.INTERNAL
    status_code = 500


class DeliveryFailure(Exception):
    """A single push send failed.

    Attributes:
        status:       HTTP status code (0 for connection-level errors).
        error_code:   Provider error code (e.g. ``UNREGISTERED``).
        unregistered: The token is invalid or expired; resending is futile.
        retryable:    Transient failure (rate limit, network, 5xx).
    """

    def __init__(
        self,
        status: int,
        error_code: str | None,
        message: str,
        *,
        unregistered: bool = False,
        retryable: bool = False,
    ):
        self.status = status
        self.error_code = error_code
        self.unregistered = unregistered
        self.retryable = retryable
        super().__init__(f"Push provider error {status} (code={error_code}): {message}")
