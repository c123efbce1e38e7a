#!/usr/bin/env python3
# roadside/infra/migrate.py
"""
Standalone migration runner.

    python -m roadside.infra.migrate

Run it in CI/CD or as a one-off job before starting the service. The
service validates the schema version at startup but never migrates.
"""
import asyncio
import sys

from roadside.config import settings
from roadside.infra.db_async import close_pool, init_pool
from roadside.infra.logging_config import get_logger, setup_logging
from roadside.infra.migrations_async import apply_migrations

logger = get_logger(__name__)


async def main() -> int:
    setup_logging(level="INFO", use_json=settings.is_production)
    logger.info(f"Migrating {settings.pghost}:{settings.pgport}/{settings.pgdatabase} (env={settings.app_env})")

    try:
        await init_pool()
        result = await apply_migrations()
    except Exception as exc:
        logger.critical(f"Migration failed: {exc}", exc_info=True)
        return 1
    finally:
        await close_pool()

    if result["applied"]:
        for version in result["applied"]:
            logger.info(f"  applied {version}")
    else:
        logger.info("No new migrations to apply")
    return 0 if result["ok"] else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
