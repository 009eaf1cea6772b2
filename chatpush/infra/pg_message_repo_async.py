# chatpush/infra/pg_message_repo_async.py
"""
Async PostgreSQL message store (asyncpg).
The only write the dispatcher performs: delivery metadata on the message row.
"""
from __future__ import annotations

from chatpush.core.ports import MessageStore
from chatpush.infra.db_resilience_async import safe_db_conn
from chatpush.infra.metrics import DispatchMetrics
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)


class AsyncPostgresMessageStore(MessageStore):
    """Async PostgreSQL implementation of MessageStore."""

    async def mark_notified(self, message_id: str, recipients: int) -> None:
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    """
                    UPDATE messages
                    SET notification_sent = true,
                        notification_sent_at = now(),
                        notification_recipients = $2
                    WHERE id = $1
                    """,
                    message_id,
                    recipients,
                )
        except Exception:
            logger.error(f"Failed to write back notification status: message_id={message_id}", exc_info=True)
            DispatchMetrics.database_error("message_mark_notified")
            raise

        # "UPDATE 0" → the message row is gone; nothing to record
        if result and result.split()[-1] == "0":
            logger.warning(f"Write-back matched no message row: message_id={message_id}")
