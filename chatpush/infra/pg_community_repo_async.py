# chatpush/infra/pg_community_repo_async.py
"""
Async PostgreSQL community store (asyncpg).
Read-only: communities are owned by the chat backend.
"""
from __future__ import annotations

from chatpush.core.domain import Community
from chatpush.core.ports import CommunityStore
from chatpush.infra.db_resilience_async import safe_db_conn
from chatpush.infra.metrics import DispatchMetrics
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)


class AsyncPostgresCommunityStore(CommunityStore):
    """Async PostgreSQL implementation of CommunityStore."""

    async def get_community(self, community_id: str) -> Community | None:
        """
        Load a community with its member ids.

        Returns:
            Community, or None when no row exists
        """
        try:
            async with safe_db_conn() as conn:
                row = await conn.fetchrow(
                    "SELECT id, name, members FROM communities WHERE id = $1",
                    community_id,
                )
        except Exception:
            logger.error(f"Failed to load community: {community_id}", exc_info=True)
            DispatchMetrics.database_error("community_get")
            raise

        if row is None:
            return None

        return Community(
            id=row["id"],
            name=row["name"] or "",
            members=list(row["members"] or []),
        )
