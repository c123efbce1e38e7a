# roadside/infra/db_async.py
"""
Async Postgres connection pool (asyncpg).

The pool is created by the app lifespan when ``STORE_BACKEND=postgres``
and by the migration CLI; repositories borrow connections through
``db_conn`` / ``safe_db_conn``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import asyncpg

from roadside.config import Settings, settings
from roadside.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None


async def init_pool(config: Settings | None = None) -> None:
    """Initialize connection pool on startup"""
    global _pool

    if _pool is not None:
        return

    cfg = config or settings
    logger.info("Initializing asyncpg connection pool")
    _pool = await asyncpg.create_pool(
        dsn=cfg.database_dsn,
        min_size=cfg.pg_pool_min,
        max_size=cfg.pg_pool_max,
        timeout=cfg.pg_connect_timeout,
        command_timeout=cfg.pg_statement_timeout_ms / 1000,
        server_settings={
            "application_name": "roadside_dispatch",
            "statement_timeout": str(cfg.pg_statement_timeout_ms),
        },
    )
    logger.info(f"Connection pool created: min={cfg.pg_pool_min}, max={cfg.pg_pool_max}")


async def close_pool() -> None:
    """Close connection pool on shutdown"""
    global _pool

    if _pool is None:
        return

    await _pool.close()
    _pool = None
    logger.info("Connection pool closed")


def pool_initialized() -> bool:
    return _pool is not None


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a connection from the pool.

    Args:
        autocommit: If False the block runs inside one transaction that is
            committed on success and rolled back on any exception.
    """
    if _pool is None:
        raise RuntimeError("Connection pool not initialized. Call init_pool() first.")

    conn = await _pool.acquire()
    try:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn
    finally:
        await _pool.release(conn)
