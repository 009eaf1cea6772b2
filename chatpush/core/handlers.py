"""
Entry points of the dispatch engine.

ChatMessageHandler
    Reacts to a new message recorded by the store. Walks
    RECEIVED → VALIDATED → RESOLVED → DISPATCHED → RECORDED, or stops at
    ABORTED. Expected outcomes (bad record, unknown community, nobody to
    notify) are logged and returned, never raised, so the trigger is not
    retried for them. Unexpected faults are raised to the job worker,
    whose retry policy then applies.

DirectSendHandler
    Synchronous request/response for trusted callers. Unauthenticated or
    malformed requests are rejected before any lookup; unexpected faults
    surface as InternalError with the underlying message.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from chatpush.core.audience import AudienceResolver
from chatpush.core.dispatcher import Dispatcher
from chatpush.core.domain import (
    AuthContext,
    DispatchResult,
    HandlerState,
    Message,
    NotificationIntent,
)
from chatpush.core.errors import (
    DispatchError,
    ErrorCode,
    InternalError,
    InvalidArgumentError,
    UnauthenticatedError,
)
from chatpush.core.models import NotificationSendIn
from chatpush.core.payload import PayloadBuilder, build_chat_intent
from chatpush.core.ports import MessageStore
from chatpush.core.tokens import TokenResolver
from chatpush.infra.logging_config import LogContext, get_logger
from chatpush.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


@dataclass
class HandlerOutcome:
    state: HandlerState
    error_code: Optional[ErrorCode] = None
    detail: Optional[str] = None
    result: Optional[DispatchResult] = None
    recorded: bool = False
    # Last state completed before an abort
    reached: Optional[HandlerState] = None

    @property
    def dispatched(self) -> bool:
        return self.result is not None

    @classmethod
    def aborted(cls, reached: HandlerState, error_code: ErrorCode, detail: str) -> "HandlerOutcome":
        return cls(state=HandlerState.ABORTED, error_code=error_code, detail=detail, reached=reached)

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"state": self.state.value}
        if self.error_code:
            data["error_code"] = self.error_code.value
            data["detail"] = self.detail
        if self.reached is not None:
            data["reached"] = self.reached.value
        if self.result is not None:
            data["success"] = True
            data["recipients"] = self.result.successful
            data["total_tokens"] = self.result.total
            data["recorded"] = self.recorded
        return data


class ChatMessageHandler:
    """Notifies a community about a newly recorded message."""

    def __init__(
        self,
        audience: AudienceResolver,
        tokens: TokenResolver,
        builder: PayloadBuilder,
        dispatcher: Dispatcher,
        messages: MessageStore,
    ) -> None:
        self._audience = audience
        self._tokens = tokens
        self._builder = builder
        self._dispatcher = dispatcher
        self._messages = messages

    async def handle(self, message_id: str, record: dict[str, Any]) -> HandlerOutcome:
        log = LogContext(logger, message_id=message_id)
        log.info(f"Processing new message: {message_id}")

        try:
            outcome = await self._process(message_id, record, log)
        except Exception as exc:
            log.error(f"Error sending chat notification: {exc.__class__.__name__}: {exc}", exc_info=True)
            DispatchMetrics.dispatch_completed("trigger", "error")
            raise

        DispatchMetrics.dispatch_completed("trigger", outcome.state.value)
        return outcome

    async def _process(self, message_id: str, record: dict[str, Any], log: LogContext) -> HandlerOutcome:
        state = HandlerState.RECEIVED
        message = Message.from_record(message_id, record)

        missing = message.missing_required_fields()
        if missing:
            log.info(f"Missing required message data ({', '.join(missing)}), skipping notification")
            return HandlerOutcome.aborted(state, ErrorCode.VALIDATION, f"missing: {', '.join(missing)}")
        state = HandlerState.VALIDATED

        audience_result = await self._audience.resolve(message.community_id, message.sender_id)
        if not audience_result.success:
            log.info(audience_result.error)
            return HandlerOutcome.aborted(state, audience_result.error_code, audience_result.error)

        audience = audience_result.data
        if audience.is_empty():
            log.info("No recipients for notification")
            return HandlerOutcome.aborted(state, ErrorCode.NO_RECIPIENTS, "no recipients")

        tokens_by_user = await self._tokens.resolve(audience.user_ids)
        if not tokens_by_user:
            log.info("No FCM tokens found for recipients")
            return HandlerOutcome.aborted(state, ErrorCode.NO_RECIPIENTS, "no tokens")
        state = HandlerState.RESOLVED
        log.debug(f"Handler state: {state.value}, tokens={len(tokens_by_user)}")

        intent = build_chat_intent(message, audience.community_name, tokens_by_user.keys())
        payload = self._builder.build(intent)
        with DispatchMetrics.track_dispatch_time("trigger"):
            result = await self._dispatcher.send(list(tokens_by_user.values()), payload)

        log.info(
            f"Notification sent to {result.successful}/{result.total} recipients "
            f"for message {message_id}"
        )
        outcome = HandlerOutcome(state=HandlerState.DISPATCHED, result=result)

        # Write-back is best effort: the notifications are already out
        try:
            await self._messages.mark_notified(message_id, result.successful)
        except Exception as exc:
            log.error(
                f"Write-back failed for message {message_id}: {exc.__class__.__name__}: {exc}",
                exc_info=True,
            )
            DispatchMetrics.writeback_failed()
            return outcome

        outcome.state = HandlerState.RECORDED
        outcome.recorded = True
        return outcome


_FIELD_REASONS = {
    "userIds": "user_ids_required",
    "title": "title_and_body_required",
    "body": "title_and_body_required",
}


def _invalid_request(exc: ValidationError) -> InvalidArgumentError:
    """First pydantic error as an InvalidArgumentError with a stable reason."""
    error = exc.errors()[0]
    loc = error["loc"]

    if not loc:
        reason = "payload_must_be_object"
    elif loc[0] == "data":
        reason = "data_must_be_object" if len(loc) == 1 else "data_values_must_be_strings"
    else:
        reason = _FIELD_REASONS.get(loc[0], "invalid_request")

    field = ".".join(str(part) for part in loc) or "request"
    return InvalidArgumentError(f"{field}: {error['msg']}", reason=reason)


def _validate_request(data: Any) -> NotificationIntent:
    try:
        request = NotificationSendIn.model_validate(data)
    except ValidationError as exc:
        raise _invalid_request(exc) from exc

    return NotificationIntent(
        title=request.title,
        body=request.body,
        user_ids=frozenset(request.userIds),
        data=request.data or {},
    )


class DirectSendHandler:
    """Sends a caller-supplied notification to an explicit list of users."""

    def __init__(
        self,
        tokens: TokenResolver,
        builder: PayloadBuilder,
        dispatcher: Dispatcher,
    ) -> None:
        self._tokens = tokens
        self._builder = builder
        self._dispatcher = dispatcher

    async def handle(self, data: Any, auth: Optional[AuthContext]) -> dict:
        if auth is None:
            raise UnauthenticatedError("User must be authenticated")

        intent = _validate_request(data)

        try:
            tokens_by_user = await self._tokens.resolve(intent.user_ids)
            if not tokens_by_user:
                logger.info("No FCM tokens found for users")
                DispatchMetrics.dispatch_completed("direct", "no_tokens")
                return {
                    "success": False,
                    "recipients": 0,
                    "totalTokens": 0,
                    "message": "No FCM tokens found",
                }

            payload = self._builder.build(intent)
            with DispatchMetrics.track_dispatch_time("direct"):
                result = await self._dispatcher.send(list(tokens_by_user.values()), payload)
        except DispatchError:
            raise
        except Exception as exc:
            logger.error(
                f"Error sending notification to users: {exc.__class__.__name__}: {exc}",
                extra={"caller": auth.caller_id},
                exc_info=True,
            )
            DispatchMetrics.dispatch_completed("direct", "error")
            raise InternalError(str(exc) or exc.__class__.__name__) from exc

        logger.info(
            f"Notification sent to {result.successful}/{result.total} users",
            extra={"caller": auth.caller_id},
        )
        DispatchMetrics.dispatch_completed("direct", "dispatched")
        return {
            "success": True,
            "recipients": result.successful,
            "totalTokens": result.total,
        }
