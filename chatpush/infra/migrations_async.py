# chatpush/infra/migrations_async.py
"""
Forward-only SQL migrations from chatpush/infra/sql, tracked by file name
in ``schema_migrations``.
"""
from __future__ import annotations

from pathlib import Path

from chatpush.infra.db_resilience_async import safe_db_conn
from chatpush.infra.logging_config import get_logger

logger = get_logger(__name__)

SQL_DIR = Path(__file__).resolve().parent / "sql"

_TRACKING_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version    text PRIMARY KEY,
        applied_at timestamptz NOT NULL DEFAULT now()
    )
"""


def list_migrations() -> list[Path]:
    """Migration files in apply order (001_init.sql, 002_..., ...)."""
    return sorted(p for p in SQL_DIR.glob("*.sql") if p.is_file())


async def apply_migrations() -> dict:
    """
    Run every migration not yet recorded, all in one transaction.

    Returns ``{"ok": True, "applied": [file names run now], "count": n}``;
    a failing file rolls the whole run back and raises.
    """
    async with safe_db_conn(autocommit=False) as conn:
        await conn.execute(_TRACKING_TABLE_SQL)
        done = {row["version"] for row in await conn.fetch("SELECT version FROM schema_migrations")}

        pending = [p for p in list_migrations() if p.name not in done]
        for path in pending:
            logger.info(f"Applying migration {path.name}")
            await conn.execute(path.read_text(encoding="utf-8"))
            await conn.execute("INSERT INTO schema_migrations (version) VALUES ($1)", path.name)

    applied = [p.name for p in pending]
    logger.info(f"Migrations complete: {len(applied)} applied, {len(done)} already present")
    return {"ok": True, "applied": applied, "count": len(applied)}
