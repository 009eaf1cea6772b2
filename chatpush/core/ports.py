from __future__ import annotations
from typing import Any, Iterable, Optional, Protocol

from chatpush.core.domain import Community


class CommunityStore(Protocol):
    async def get_community(self, community_id: str) -> Optional[Community]: ...


class UserTokenStore(Protocol):
    async def get_tokens(self, user_ids: Iterable[str]) -> dict[str, Optional[str]]:
        """
        Raw ``{user_id: fcm_token}`` for the users that exist among ``user_ids``.
        Tokens may be None or empty; filtering is the caller's job.
        """
        ...


class MessageStore(Protocol):
    async def mark_notified(self, message_id: str, recipients: int) -> None:
        """Set notification_sent, notification_sent_at (server time) and notification_recipients."""
        ...


class PushProvider(Protocol):
    async def send(self, token: str, payload: dict[str, Any]) -> str:
        """
        Send one addressed payload.

        Returns the provider message id; raises DeliveryFailure on failure.
        """
        ...
