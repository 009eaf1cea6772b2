# chatpush/bootstrap.py
"""
Composition root.

Builds the resolvers, payload builder, dispatcher and handlers once per
process and hands them to the HTTP app and the job worker. Stores and the
push provider default to the Postgres repositories and FCM; tests pass
in-memory fakes instead.
"""
from __future__ import annotations

from dataclasses import dataclass

from chatpush.config import Settings
from chatpush.core.audience import AudienceResolver
from chatpush.core.dispatcher import Dispatcher
from chatpush.core.handlers import ChatMessageHandler, DirectSendHandler
from chatpush.core.payload import PayloadBuilder
from chatpush.core.ports import CommunityStore, MessageStore, PushProvider, UserTokenStore
from chatpush.core.tokens import TokenResolver
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Container:
    audience: AudienceResolver
    tokens: TokenResolver
    builder: PayloadBuilder
    dispatcher: Dispatcher
    chat_handler: ChatMessageHandler
    direct_handler: DirectSendHandler


def build_push_provider(settings: Settings) -> PushProvider:
    """
    FCM sender from settings.

    Without FCM settings the app still starts (health, readiness, job
    bookkeeping) and each send fails with DeliveryFailure. Production
    refuses to start without them, see validate_required_for_production.
    """
    from chatpush.infra.fcm_sender import FcmCredentials, FcmSender, UnconfiguredPushProvider

    if not settings.fcm_enabled:
        logger.warning("FCM is not configured: push sends will fail")
        return UnconfiguredPushProvider()

    credentials = FcmCredentials(
        credentials_json=settings.google_credentials_json,
        credentials_file=settings.google_credentials_file,
    )
    return FcmSender(
        settings.fcm_project_id,
        credentials,
        timeout_seconds=settings.fcm_request_timeout_seconds,
    )


def build_container(
    settings: Settings,
    *,
    provider: PushProvider | None = None,
    communities: CommunityStore | None = None,
    users: UserTokenStore | None = None,
    messages: MessageStore | None = None,
) -> Container:
    if communities is None or users is None or messages is None:
        from chatpush.infra.pg_community_repo_async import AsyncPostgresCommunityStore
        from chatpush.infra.pg_message_repo_async import AsyncPostgresMessageStore
        from chatpush.infra.pg_user_repo_async import AsyncPostgresUserStore

        communities = communities or AsyncPostgresCommunityStore()
        users = users or AsyncPostgresUserStore()
        messages = messages or AsyncPostgresMessageStore()

    if provider is None:
        provider = build_push_provider(settings)

    audience = AudienceResolver(communities)
    tokens = TokenResolver(users, batch_size=settings.token_lookup_batch_size)
    builder = PayloadBuilder(
        channel_id=settings.fcm_android_channel_id,
        click_action=settings.fcm_click_action,
    )
    dispatcher = Dispatcher(provider, max_concurrency=settings.dispatch_max_concurrency)

    logger.info(
        f"Container built: provider={provider.__class__.__name__}, "
        f"batch={settings.token_lookup_batch_size}, "
        f"max_concurrency={settings.dispatch_max_concurrency}"
    )
    return Container(
        audience=audience,
        tokens=tokens,
        builder=builder,
        dispatcher=dispatcher,
        chat_handler=ChatMessageHandler(audience, tokens, builder, dispatcher, messages),
        direct_handler=DirectSendHandler(tokens, builder, dispatcher),
    )
