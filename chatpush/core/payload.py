"""
FCM HTTP v1 payload construction.

``PayloadBuilder.build`` turns a ``NotificationIntent`` into the body of an
FCM ``message`` without the ``token`` field; the dispatcher adds the token
per endpoint. FCM requires every ``data`` value to be a string, so all
values are stringified here.

Platform hints:
- Android: high priority, notification channel, default sound and vibration
- APNs: default sound, badge 1
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from chatpush.core.domain import Message, NotificationIntent, to_epoch_millis

Payload = dict[str, Any]

CHAT_MESSAGE_CATEGORY = "chat_message"
DEFAULT_CHANNEL_ID = "chat"
DEFAULT_CLICK_ACTION = "FLUTTER_NOTIFICATION_CLICK"


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def chat_title(sender_name: str, community_name: str) -> str:
    return f"{sender_name} in {community_name}"


def chat_body(message: Message) -> str:
    """Raw text for text messages, a placeholder for anything else."""
    if message.is_text():
        return message.content
    return f"Sent a {message.message_type}"


def build_chat_intent(
    message: Message,
    community_name: str,
    user_ids: Iterable[str],
    now: Optional[datetime] = None,
) -> NotificationIntent:
    """Notification for a new community message.

    The data timestamp is the message's timestamp in epoch millis, or
    ``now`` when the message carries none.
    """
    moment = message.timestamp or now or datetime.now(timezone.utc)
    return NotificationIntent(
        title=chat_title(message.sender_name or "", community_name),
        body=chat_body(message),
        user_ids=frozenset(user_ids),
        data={
            "communityId": message.community_id or "",
            "messageId": message.id,
            "senderId": message.sender_id or "",
            "senderName": message.sender_name or "",
            "messageType": message.message_type,
            "timestamp": str(to_epoch_millis(moment)),
        },
        category=CHAT_MESSAGE_CATEGORY,
        route=f"/chat/{message.community_id}",
    )


class PayloadBuilder:
    def __init__(
        self,
        channel_id: str = DEFAULT_CHANNEL_ID,
        click_action: str = DEFAULT_CLICK_ACTION,
    ) -> None:
        self._channel_id = channel_id
        self._click_action = click_action

    def build(self, intent: NotificationIntent) -> Payload:
        data: dict[str, str] = {}
        if intent.category:
            data["type"] = intent.category
        for key, value in intent.data.items():
            if value is None:
                continue
            data[str(key)] = _stringify(value)
        if intent.route:
            data["navigation"] = intent.route
        data["clickAction"] = self._click_action

        return {
            "notification": {
                "title": intent.title,
                "body": intent.body,
            },
            "data": data,
            "android": {
                "priority": "high",
                "notification": {
                    "channel_id": self._channel_id,
                    "sound": "default",
                    "default_sound": True,
                    "default_vibrate_timings": True,
                    "notification_priority": "PRIORITY_HIGH",
                    "click_action": self._click_action,
                },
            },
            "apns": {
                "payload": {
                    "aps": {
                        "sound": "default",
                        "badge": 1,
                    },
                },
            },
        }
