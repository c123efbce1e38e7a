# roadside/infra/schema_validator.py
"""
Schema version check at startup.

The service does NOT run migrations itself; it refuses to start when the
latest applied migration differs from the expected version
(``EXPECTED_SCHEMA_VERSION`` unless the caller passes one).
"""
from __future__ import annotations

from roadside.config import settings
from roadside.infra.db_async import db_conn
from roadside.infra.logging_config import get_logger

logger = get_logger(__name__)

_RUN_MIGRATIONS = "Run migrations first: python -m roadside.infra.migrate"


async def validate_schema_version(expected_version: str | None = None) -> dict:
    """
    Raises:
        RuntimeError: schema missing or at the wrong version
    """
    expected_version = expected_version or settings.expected_schema_version
    async with db_conn() as conn:
        table_exists = await conn.fetchval("SELECT to_regclass('schema_migrations') IS NOT NULL")
        if not table_exists:
            error = f"Schema migrations table not found. {_RUN_MIGRATIONS}"
            logger.critical(error)
            raise RuntimeError(error)

        latest = await conn.fetchrow(
            "SELECT version, applied_at FROM schema_migrations ORDER BY version DESC LIMIT 1"
        )

    if not latest:
        error = f"No migrations have been applied. {_RUN_MIGRATIONS}"
        logger.critical(error)
        raise RuntimeError(error)

    current_version = latest["version"]
    if current_version != expected_version:
        error = (
            f"Schema version mismatch! "
            f"Expected: {expected_version}, Found: {current_version}. "
            f"{_RUN_MIGRATIONS}"
        )
        logger.critical(error)
        raise RuntimeError(error)

    logger.info(f"Schema version validated: {current_version}")
    return {
        "ok": True,
        "current_version": current_version,
        "expected_version": expected_version,
    }
