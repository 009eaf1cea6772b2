from __future__ import annotations

from typing import Iterable, Iterator

from chatpush.core.ports import UserTokenStore
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 500


def chunked(items: list[str], size: int) -> Iterator[list[str]]:
    """Split ``items`` into consecutive lists of at most ``size`` elements."""
    for start in range(0, len(items), size):
        yield items[start:start + size]


class TokenResolver:
    """
    Maps user ids to their current FCM token.

    The id set is looked up in bounded batches so a large audience never
    produces a single oversized store query. Users without a token (or with
    a blank one) are dropped. Tokens shared by several users are kept once
    per user.
    """

    def __init__(self, users: UserTokenStore, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self._users = users
        self._batch_size = batch_size if batch_size > 0 else DEFAULT_BATCH_SIZE

    async def resolve(self, user_ids: Iterable[str]) -> dict[str, str]:
        requested = sorted({uid for uid in user_ids if uid})
        if not requested:
            return {}

        tokens: dict[str, str] = {}
        batches = 0
        for batch in chunked(requested, self._batch_size):
            batches += 1
            wanted = set(batch)
            found = await self._users.get_tokens(batch)
            for user_id, token in found.items():
                # Stores may return more than asked; never leak those
                if user_id not in wanted:
                    continue
                if isinstance(token, str) and token.strip():
                    tokens[user_id] = token

        logger.debug(
            f"Tokens resolved: users={len(requested)}, tokens={len(tokens)}, batches={batches}"
        )
        return tokens
