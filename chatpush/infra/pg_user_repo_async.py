# chatpush/infra/pg_user_repo_async.py
"""
Async PostgreSQL user token store (asyncpg).
"""
from __future__ import annotations

from typing import Iterable

from chatpush.core.ports import UserTokenStore
from chatpush.infra.db_resilience_async import safe_db_conn
from chatpush.infra.metrics import DispatchMetrics
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)


class AsyncPostgresUserStore(UserTokenStore):
    """Async PostgreSQL implementation of UserTokenStore."""

    async def get_tokens(self, user_ids: Iterable[str]) -> dict[str, str | None]:
        """
        Fetch FCM tokens for one batch of users.

        Rows without a token are filtered in SQL; blank tokens are left for
        the TokenResolver to drop. Batching is the caller's job.
        """
        ids = list(user_ids)
        if not ids:
            return {}

        try:
            async with safe_db_conn() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, fcm_token FROM users
                    WHERE id = ANY($1::text[])
                      AND fcm_token IS NOT NULL
                    """,
                    ids,
                )
        except Exception:
            logger.error(f"Failed to load tokens for {len(ids)} users", exc_info=True)
            DispatchMetrics.database_error("user_get_tokens")
            raise

        return {row["id"]: row["fcm_token"] for row in rows}
