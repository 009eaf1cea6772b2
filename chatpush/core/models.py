# chatpush/core/models.py
"""
Pydantic request models for the direct-call path.

These live outside the transport layer so DirectSendHandler can validate
payloads without depending on FastAPI.
"""
from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field

NonEmptyStr = Annotated[str, Field(min_length=1)]


class NotificationSendIn(BaseModel):
    """Request body of POST /v1/notifications/send."""

    # No coercion: "data" values and user ids must already be strings
    model_config = ConfigDict(strict=True)

    userIds: list[NonEmptyStr] = Field(..., min_length=1, description="Recipient user ids")
    title: NonEmptyStr
    body: NonEmptyStr
    data: dict[str, str] | None = Field(default=None, description="Extra string key/value pairs")
