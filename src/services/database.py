"""asyncpg connection pool for the activity store.

The pool is created once in the app lifespan and shared by every request.
Repositories acquire connections through ``get_connection()``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from src.config import Settings, get_settings

logger = logging.getLogger("activity_sync.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.database_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=s.db_command_timeout_s,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)", s.db_pool_min_size, s.db_pool_max_size
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    pool: asyncpg.Pool | None = None,
    transaction: bool = False,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a pooled connection, optionally inside a transaction.

    Usage::

        async with get_connection(transaction=True) as conn:
            await conn.execute("UPDATE activities SET ... WHERE ...", ...)
    """
    source = pool or get_pool()
    async with source.acquire() as conn:
        if transaction:
            async with conn.transaction():
                yield conn
        else:
            yield conn


async def ping(pool: asyncpg.Pool | None = None) -> Any:
    """Round-trip a trivial query; raises if the database is unreachable."""
    async with get_connection(pool) as conn:
        return await conn.fetchval("SELECT 1")
