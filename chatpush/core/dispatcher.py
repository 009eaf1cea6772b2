from __future__ import annotations

import asyncio
from typing import Sequence

from chatpush.core.domain import DispatchResult, SendOutcome
from chatpush.core.errors import DeliveryFailure
from chatpush.core.payload import Payload
from chatpush.core.ports import PushProvider
from chatpush.infra.logging_config import get_logger, mask_token
from chatpush.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class Dispatcher:
    """
    Fan-out of one payload to many tokens.

    Every token gets exactly one send. Sends run concurrently (optionally
    bounded by ``max_concurrency``) and each task captures its own outcome,
    so one failing token never affects the others. ``send`` returns only
    after every task has finished.
    """

    def __init__(self, provider: PushProvider, max_concurrency: int = 0) -> None:
        self._provider = provider
        self._max_concurrency = max_concurrency

    async def send(self, tokens: Sequence[str], payload: Payload) -> DispatchResult:
        if not tokens:
            logger.debug("Dispatch skipped: no tokens")
            return DispatchResult(total=0, successful=0)

        semaphore = (
            asyncio.Semaphore(self._max_concurrency)
            if self._max_concurrency > 0 else None
        )

        async def _bounded(token: str) -> SendOutcome:
            if semaphore is None:
                return await self._send_one(token, payload)
            async with semaphore:
                return await self._send_one(token, payload)

        outcomes = await asyncio.gather(*(_bounded(token) for token in tokens))
        result = DispatchResult.from_outcomes(list(outcomes))

        logger.debug(f"Notification sent to {result.successful}/{result.total} recipients")
        return result

    async def _send_one(self, token: str, payload: Payload) -> SendOutcome:
        try:
            message_id = await self._provider.send(token, payload)
        except DeliveryFailure as exc:
            logger.warning(f"Failed to send notification to token {mask_token(token)}: {exc}")
            DispatchMetrics.send_attempted(False)
            return SendOutcome(token=token, error=exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                f"Failed to send notification to token {mask_token(token)}: "
                f"{exc.__class__.__name__}: {exc}",
                exc_info=True,
            )
            DispatchMetrics.send_attempted(False)
            return SendOutcome(
                token=token,
                error=DeliveryFailure(0, None, f"{exc.__class__.__name__}: {exc}", retryable=True),
            )

        DispatchMetrics.send_attempted(True)
        return SendOutcome(token=token, message_id=message_id)
