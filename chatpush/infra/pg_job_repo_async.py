# chatpush/infra/pg_job_repo_async.py
"""
Job queue over the ``jobs`` table (asyncpg).

Rows are written by the ``messages`` insert trigger (sql/001_init.sql),
one ``chat_message_created`` job per stored message, and consumed by
JobWorker. Workers claim with FOR UPDATE SKIP LOCKED, so several
processes can poll the same table without double-delivery.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from chatpush.infra.db_resilience_async import safe_db_conn
from chatpush.infra.logging_config import get_logger
from chatpush.infra.metrics import inc_counter

logger = get_logger(__name__)

JOB_STATUSES = ("pending", "running", "completed", "failed")

_JOB_COLUMNS = "id, job_type, payload, status, attempts, max_attempts, error_message, scheduled_at, created_at"

_CLAIM_SQL = f"""
    UPDATE jobs
    SET status = 'running', started_at = now()
    WHERE id IN (
        SELECT id FROM jobs
        WHERE status = 'pending' AND scheduled_at <= now()
        ORDER BY priority, scheduled_at
        LIMIT $1
        FOR UPDATE SKIP LOCKED
    )
    RETURNING {_JOB_COLUMNS}
"""

# Retry with base_delay * 2^attempts until max_attempts, then park as failed
_FAIL_SQL = """
    UPDATE jobs
    SET attempts = attempts + 1,
        error_message = $2,
        status = CASE WHEN attempts + 1 < max_attempts THEN 'pending' ELSE 'failed' END,
        scheduled_at = CASE
            WHEN attempts + 1 < max_attempts
                THEN now() + make_interval(secs => $3 * power(2, attempts))
            ELSE scheduled_at
        END,
        completed_at = CASE WHEN attempts + 1 < max_attempts THEN NULL ELSE now() END
    WHERE id = $1
    RETURNING status
"""

_RESET_STALE_SQL = """
    WITH reset AS (
        UPDATE jobs
        SET status = 'pending', scheduled_at = now()
        WHERE status = 'running' AND started_at < now() - make_interval(secs => $1)
        RETURNING 1
    )
    SELECT count(*)::int FROM reset
"""


@dataclass
class Job:
    id: str
    job_type: str
    payload: dict[str, Any]
    status: str
    attempts: int = 0
    max_attempts: int = 5
    error_message: str | None = None
    scheduled_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def message_id(self) -> str | None:
        value = self.payload.get("message_id")
        return str(value) if value else None

    @property
    def record(self) -> dict[str, Any]:
        """Message row captured by the trigger (``to_jsonb(NEW)``)."""
        return self.payload.get("record") or {}


def _row_to_job(row) -> Job:
    payload = row["payload"]
    # asyncpg hands jsonb back as text unless a codec is registered
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=str(row["id"]),
        job_type=row["job_type"],
        payload=payload or {},
        status=row["status"],
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        error_message=row["error_message"],
        scheduled_at=row["scheduled_at"],
        created_at=row["created_at"],
    )


class AsyncPostgresJobRepository:

    async def claim_batch(self, batch_size: int = 5) -> list[Job]:
        """Claim up to ``batch_size`` due jobs; they come back as 'running'."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(_CLAIM_SQL, batch_size)
        return [_row_to_job(row) for row in rows]

    async def complete(self, job_id: str) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE jobs SET status = 'completed', completed_at = now() WHERE id = $1",
                job_id,
            )

    async def discard(self, job_id: str, reason: str) -> None:
        """Park a job as failed without retrying: nothing can ever handle it."""
        async with safe_db_conn() as conn:
            await conn.execute(
                "UPDATE jobs SET status = 'failed', error_message = $2, completed_at = now() WHERE id = $1",
                job_id,
                reason[:2000],
            )
        inc_counter("jobs_dead")

    async def fail(self, job_id: str, error_message: str, *, base_delay: float = 5.0) -> str | None:
        """
        Record a failed attempt.

        Returns the job's new status: 'pending' when a retry is scheduled,
        'failed' once max_attempts is used up (None if the job is gone).
        """
        async with safe_db_conn() as conn:
            status = await conn.fetchval(_FAIL_SQL, job_id, error_message[:2000], base_delay)

        if status == "failed":
            logger.error(f"Job gave up after max attempts: id={job_id[:8]}", extra={"job_id": job_id})
            inc_counter("jobs_dead")
        return status

    async def count_by_status(self) -> dict[str, int]:
        """{status: count} for every known status, zeros included."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT status, count(*)::int AS cnt FROM jobs GROUP BY status")
        counts = dict.fromkeys(JOB_STATUSES, 0)
        counts.update({row["status"]: row["cnt"] for row in rows})
        return counts

    async def reset_stale_running(self, timeout_seconds: int = 300) -> int:
        """Requeue jobs left 'running' by a crashed worker."""
        async with safe_db_conn() as conn:
            count = await conn.fetchval(_RESET_STALE_SQL, float(timeout_seconds)) or 0
        if count:
            logger.warning(f"Requeued {count} stale running jobs (stuck > {timeout_seconds}s)")
            inc_counter("jobs_stale_reset", count)
        return count
