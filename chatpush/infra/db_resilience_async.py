# chatpush/infra/db_resilience_async.py
"""
Connection borrowing for the repositories.

safe_db_conn() retries only the *acquire* step on transient failures
(server restart, pool exhaustion, network blip); errors raised by the
queries inside the block reach the caller untouched.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import asyncpg

from chatpush.infra.db_async import get_pool
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)

_TRANSIENT_TYPES = (
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.DeadlockDetectedError,
    ConnectionError,
    asyncio.TimeoutError,
)
_TRANSIENT_MARKERS = ("connection", "timeout", "closed", "network", "deadlock")

RETRY_INITIAL_DELAY = 0.1
RETRY_MAX_DELAY = 5.0


def is_transient_error(exc: Exception) -> bool:
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


async def _acquire_with_retry(pool: asyncpg.Pool, max_retries: int) -> asyncpg.Connection:
    """Up to ``max_retries`` extra attempts, doubling the pause each time."""
    delay = RETRY_INITIAL_DELAY
    attempt = 0
    while True:
        try:
            return await pool.acquire()
        except Exception as exc:
            if not is_transient_error(exc):
                raise
            if attempt == max_retries:
                logger.error(f"Giving up on a database connection after {attempt + 1} attempts: {exc}")
                raise
            attempt += 1
            logger.warning(f"Database connection attempt {attempt} failed ({exc}); retrying in {delay:.2f}s")
            await asyncio.sleep(delay)
            delay = min(delay * 2, RETRY_MAX_DELAY)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, max_retries: int = 3):
    """
    Borrow a pooled connection; ``autocommit=False`` wraps the block in a
    transaction.

        async with safe_db_conn() as conn:
            rows = await conn.fetch("SELECT id, fcm_token FROM users WHERE id = ANY($1::text[])", ids)
    """
    pool = await get_pool()
    conn = await _acquire_with_retry(pool, max_retries)
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await pool.release(conn)
