# chatpush/infra/db_async.py
"""
Process-wide asyncpg pool.

init_pool() runs in the app lifespan (and in ``python -m
chatpush.infra.migrate``), close_pool() on shutdown. Repositories borrow
connections through safe_db_conn in db_resilience_async.
"""
from __future__ import annotations

import asyncpg

from chatpush.config import settings
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool() -> asyncpg.Pool:
    global _pool

    if _pool is None:
        _pool = await asyncpg.create_pool(
            dsn=settings.database_dsn,
            min_size=settings.pg_pool_min,
            max_size=settings.pg_pool_max,
            timeout=settings.pg_connect_timeout,
            command_timeout=60,
            server_settings={"application_name": "chatpush"},
        )
        logger.info(f"Database pool ready: min={settings.pg_pool_min}, max={settings.pg_pool_max}")
    return _pool


async def close_pool() -> None:
    global _pool

    if _pool is not None:
        pool, _pool = _pool, None
        await pool.close()
        logger.info("Database pool closed")


async def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool is not initialized; call init_pool() at startup")
    return _pool
