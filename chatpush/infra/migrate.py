#!/usr/bin/env python3
# chatpush/infra/migrate.py
"""
Standalone migration runner.

    python -m chatpush.infra.migrate

Run it before starting the service (CI/CD step, init container or a
dedicated "migrate" container). The service itself never migrates.
"""
import asyncio
import sys

from chatpush.config import settings
from chatpush.infra.db_async import close_pool, init_pool
from chatpush.infra.logging_config import get_logger, setup_logging
from chatpush.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    """Run migrations"""
    logger.info("=" * 60)
    logger.info("Database Migration Runner")
    logger.info(f"Environment: {settings.app_env}")
    logger.info(f"Database: {settings.pghost}:{settings.pgport}/{settings.pgdatabase}")
    logger.info("=" * 60)

    try:
        await init_pool()
        result = await apply_migrations()

        logger.info(f"Status: {'SUCCESS' if result['ok'] else 'FAILED'}")
        if result['applied']:
            for migration in result['applied']:
                logger.info(f"  applied {migration}")
        else:
            logger.info("No new migrations to apply")

        return 0 if result['ok'] else 1

    except Exception as exc:
        logger.critical(f"MIGRATION FAILED: {exc}", exc_info=True)
        return 1

    finally:
        await close_pool()


if __name__ == "__main__":
    setup_logging(level="INFO", use_json=False)
    sys.exit(asyncio.run(main()))
