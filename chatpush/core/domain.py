from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Dict

from chatpush.core.errors import DeliveryFailure


DEFAULT_MESSAGE_TYPE = "text"


# ============================================================================
# STORE RECORDS (read-only to the core)
# ============================================================================

def _pick(record: Dict[str, Any], *keys: str) -> Any:
    """First non-None value among ``keys`` (camelCase or snake_case)."""
    for key in keys:
        value = record.get(key)
        if value is not None:
            return value
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Normalize a message timestamp into an aware datetime.

    Accepts datetimes (naive ones are taken as UTC), ISO 8601 strings and
    epoch numbers. Numbers above 1e12 are read as milliseconds.
    Returns None for missing or unparseable values.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None


def to_epoch_millis(moment: datetime) -> int:
    """Epoch milliseconds of an aware (or UTC-naive) datetime."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


@dataclass
class Message:
    """
    A chat message as recorded by the store.

    The notification fields stay unset until the core writes back the
    delivery outcome.
    """
    id: str
    community_id: Optional[str] = None
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    content: str = ""
    message_type: str = DEFAULT_MESSAGE_TYPE
    timestamp: Optional[datetime] = None

    notification_sent: Optional[bool] = None
    notification_recipients: Optional[int] = None

    @classmethod
    def from_record(cls, message_id: str, record: Dict[str, Any]) -> "Message":
        """Build a Message from a trigger record (camelCase or snake_case keys)."""
        return cls(
            id=message_id,
            community_id=_pick(record, "communityId", "community_id"),
            sender_id=_pick(record, "senderId", "sender_id"),
            sender_name=_pick(record, "senderName", "sender_name"),
            content=_pick(record, "content") or "",
            message_type=_pick(record, "messageType", "message_type") or DEFAULT_MESSAGE_TYPE,
            timestamp=parse_timestamp(_pick(record, "timestamp", "created_at")),
        )

    def missing_required_fields(self) -> list[str]:
        """Names of the fields a dispatch needs but this message lacks."""
        required = {
            "communityId": self.community_id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
        }
        return [name for name, value in required.items() if not value]

    def is_text(self) -> bool:
        return self.message_type == DEFAULT_MESSAGE_TYPE


@dataclass
class Community:
    id: str
    name: str
    members: list[str] = field(default_factory=list)


@dataclass
class User:
    id: str
    fcm_token: Optional[str] = None

    def has_token(self) -> bool:
        return bool(self.fcm_token and self.fcm_token.strip())


@dataclass(frozen=True)
class Audience:
    """Resolved recipients of a community message (sender excluded)."""
    community_id: str
    community_name: str
    user_ids: frozenset[str]

    def is_empty(self) -> bool:
        return not self.user_ids


# ============================================================================
# DISPATCH
# ============================================================================

@dataclass
class NotificationIntent:
    """What to notify and whom; built per invocation, never persisted."""
    title: str
    body: str
    user_ids: frozenset[str] = frozenset()
    data: Dict[str, str] = field(default_factory=dict)
    category: Optional[str] = None  # data["type"]
    route: Optional[str] = None  # data["navigation"]


@dataclass
class SendOutcome:
    """Result of a single addressed send."""
    token: str
    message_id: Optional[str] = None  # Provider message name on success
    error: Optional[DeliveryFailure] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class DispatchResult:
    total: int = 0
    successful: int = 0
    outcomes: list[SendOutcome] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return self.total - self.successful

    @classmethod
    def from_outcomes(cls, outcomes: list[SendOutcome]) -> "DispatchResult":
        return cls(
            total=len(outcomes),
            successful=sum(1 for o in outcomes if o.success),
            outcomes=outcomes,
        )


class HandlerState(str, Enum):
    """Store-triggered handler states."""
    RECEIVED = "received"
    VALIDATED = "validated"
    RESOLVED = "resolved"
    DISPATCHED = "dispatched"
    RECORDED = "recorded"
    ABORTED = "aborted"


@dataclass(frozen=True)
class AuthContext:
    """Verified identity of a direct-call caller."""
    caller_id: str
    method: str = "bearer"  # "bearer" | "hmac"
