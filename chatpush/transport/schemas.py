# chatpush/transport/schemas.py
from pydantic import BaseModel


class NotificationSendOut(BaseModel):
    success: bool
    recipients: int
    totalTokens: int
    message: str | None = None


class ErrorDetail(BaseModel):
    status: str
    message: str
    reason: str | None = None


class ErrorOut(BaseModel):
    error: ErrorDetail
