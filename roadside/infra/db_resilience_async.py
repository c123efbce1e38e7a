# roadside/infra/db_resilience_async.py
"""
Retry on transient errors while *acquiring* a connection.

Statements themselves are never retried here: every dispatch write is a
conditional write whose caller decides what a failure means.
"""
from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator

import asyncpg

from roadside.infra.db_async import db_conn
from roadside.infra.logging_config import get_logger
from roadside.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

MAX_RETRIES = 3
INITIAL_DELAY = 0.1
MAX_DELAY = 2.0

_TRANSIENT_PATTERNS = (
    "connection",
    "timeout",
    "too many connections",
    "server closed",
    "connection reset",
)


def is_transient_error(exc: BaseException) -> bool:
    """Connection-level failures worth another attempt."""
    if isinstance(exc, (
        asyncpg.PostgresConnectionError,
        asyncpg.TooManyConnectionsError,
        asyncpg.CannotConnectNowError,
        ConnectionError,
        asyncio.TimeoutError,
        OSError,
    )):
        return True
    if isinstance(exc, (asyncpg.PostgresError, RuntimeError)):
        return False
    message = str(exc).lower()
    return any(pattern in message for pattern in _TRANSIENT_PATTERNS)


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    ``db_conn`` with retries on transient acquisition errors.

    Usage:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow("SELECT ...", job_id)
    """
    delay = INITIAL_DELAY
    async with AsyncExitStack() as stack:
        for attempt in range(MAX_RETRIES + 1):
            try:
                conn = await stack.enter_async_context(db_conn(autocommit=autocommit))
                break
            except Exception as exc:
                if not is_transient_error(exc) or attempt >= MAX_RETRIES:
                    DispatchMetrics.database_error("acquire")
                    logger.error(f"Could not get a database connection: {exc}")
                    raise
                logger.warning(
                    f"Transient error getting connection (attempt {attempt + 1}/{MAX_RETRIES}): {exc}. "
                    f"Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2.0, MAX_DELAY)
        yield conn
