"""
Result wrapper for expected outcomes.

Use ``ServiceResult`` for expected failures and no-ops (missing community,
nobody to notify) so callers branch on ``error_code`` instead of catching
exceptions. Unexpected failures (store down, bugs) still raise.

Usage:
    result = await audience.resolve(community_id, sender_id)
    if not result.success:
        if result.error_code == ErrorCode.NOT_FOUND:
            ...
    recipients = result.data
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from chatpush.core.errors import ErrorCode

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Human-readable message if failed
        error_code: Machine-readable ``ErrorCode``
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: ErrorCode | None = None

    @classmethod
    def ok(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(cls, error: str, error_code: ErrorCode) -> ServiceResult[T]:
        return cls(success=False, error=error, error_code=error_code)

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True}
        return {
            "success": False,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
        }
