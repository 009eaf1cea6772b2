from __future__ import annotations

from chatpush.core.domain import Audience
from chatpush.core.errors import ErrorCode
from chatpush.core.ports import CommunityStore
from chatpush.core.results import ServiceResult
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)


class AudienceResolver:
    """Community members eligible for a message: everyone but the sender."""

    def __init__(self, communities: CommunityStore) -> None:
        self._communities = communities

    async def resolve(self, community_id: str, sender_id: str) -> ServiceResult[Audience]:
        """
        Returns:
            ServiceResult with the Audience (possibly empty) on success.

        Error codes:
            NOT_FOUND: the community does not exist
        """
        community = await self._communities.get_community(community_id)
        if community is None:
            logger.info(f"Community not found: {community_id}")
            return ServiceResult.failure(
                f"Community not found: {community_id}",
                ErrorCode.NOT_FOUND,
            )

        recipients = frozenset(m for m in community.members if m and m != sender_id)
        logger.debug(
            f"Audience resolved: community={community_id}, "
            f"members={len(community.members)}, recipients={len(recipients)}"
        )
        return ServiceResult.ok(
            Audience(
                community_id=community.id,
                community_name=community.name,
                user_ids=recipients,
            )
        )
