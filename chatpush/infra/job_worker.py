# chatpush/infra/job_worker.py
"""
Background consumer of the jobs table.

The messages insert trigger enqueues one ``chat_message_created`` job per
stored message; JobWorker claims due jobs in batches, runs them
concurrently and settles each one:

- handler returns           -> completed
- handler raises            -> retried with exponential backoff (repo.fail)
- UnprocessableJob / no handler for the type -> discarded, never retried
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from chatpush.core.handlers import ChatMessageHandler
from chatpush.infra.logging_config import LogContext, get_logger
from chatpush.infra.metrics import inc_counter
from chatpush.infra.pg_job_repo_async import AsyncPostgresJobRepository, Job

logger = get_logger(__name__)

CHAT_MESSAGE_CREATED = "chat_message_created"

JobHandler = Callable[[Job], Awaitable[None]]


class UnprocessableJob(Exception):
    """The job payload can never succeed; retrying is pointless."""


def make_chat_message_job_handler(handler: ChatMessageHandler) -> JobHandler:
    """Feed trigger-written ``{"message_id", "record"}`` payloads to the chat handler."""

    async def handle_chat_message_created(job: Job) -> None:
        if not job.message_id:
            raise UnprocessableJob("payload has no message_id")

        outcome = await handler.handle(job.message_id, job.record)
        logger.debug(
            f"Chat message job settled: {outcome.to_dict()}",
            extra={"job_id": job.id, "message_id": job.message_id},
        )

    return handle_chat_message_created


class JobWorker:
    """
    Usage:
        worker = JobWorker(AsyncPostgresJobRepository())
        worker.register(CHAT_MESSAGE_CREATED, make_chat_message_job_handler(handler))
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._handlers: dict[str, JobHandler] = {}
        self._task: asyncio.Task | None = None
        self._next_stale_check = 0.0

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def list_handlers(self) -> list[str]:
        return sorted(self._handlers)

    async def start(self) -> None:
        self._next_stale_check = time.monotonic() + self._stale_timeout / 5
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker started: poll={self._poll_interval}s, batch={self._batch_size}, "
            f"handlers={self.list_handlers()}"
        )

    async def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def run_once(self) -> int:
        """Claim and settle one batch. Returns the number of jobs claimed."""
        jobs = await self._repo.claim_batch(self._batch_size)
        if jobs:
            await asyncio.gather(*(self._execute(job) for job in jobs))
        return len(jobs)

    async def _loop(self) -> None:
        while True:
            try:
                await self._maybe_reset_stale()
                claimed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker loop error: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)
                continue

            # A full batch means more work is probably waiting
            await asyncio.sleep(0 if claimed >= self._batch_size else self._poll_interval)

    async def _maybe_reset_stale(self) -> None:
        now = time.monotonic()
        if now < self._next_stale_check:
            return
        self._next_stale_check = now + self._stale_timeout / 5
        try:
            await self._repo.reset_stale_running(self._stale_timeout)
        except Exception as exc:
            logger.warning(f"Stale job reset failed: {exc}")

    async def _execute(self, job: Job) -> None:
        log = LogContext(logger, job_id=job.id, message_id=job.message_id)
        handler = self._handlers.get(job.job_type)
        if handler is None:
            log.error(f"No handler registered for job_type={job.job_type}, discarding")
            await self._repo.discard(job.id, f"no handler for {job.job_type}")
            return

        try:
            await handler(job)
        except asyncio.CancelledError:
            raise
        except UnprocessableJob as exc:
            log.error(f"Discarding job {job.id[:8]}: {exc}")
            await self._repo.discard(job.id, str(exc))
            return
        except Exception as exc:
            error = f"{exc.__class__.__name__}: {exc}"[:500]
            status = await self._repo.fail(job.id, error, base_delay=self._base_retry_delay)
            inc_counter("jobs_failed_attempt", job_type=job.job_type)
            log.warning(
                f"Job {job.id[:8]} attempt {job.attempts + 1}/{job.max_attempts} failed "
                f"({'retry scheduled' if status == 'pending' else 'giving up'}): {error[:100]}"
            )
            return

        await self._repo.complete(job.id)
        inc_counter("jobs_completed", job_type=job.job_type)
        log.info(f"Job {job.id[:8]} completed on attempt {job.attempts + 1}")

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Job worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
