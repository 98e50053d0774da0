"""
Async PostgreSQL connection pool for the signal engine.

All database access goes through a single asyncpg pool created lazily on first
use (or eagerly from the FastAPI lifespan). Services call get_db_pool() and
acquire connections themselves.

Pool configuration:
- min_size: 2
- max_size: 10
- command_timeout: 60 seconds

Usage:
    pool = await get_db_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            await conn.execute(...)
"""

from typing import Optional

import asyncpg
from asyncpg import Pool

from screener.core.config import get_settings


# Process-wide pool; None until init_db() runs
_pool: Optional[Pool] = None


async def init_db() -> Pool:
    """
    Create the connection pool if it does not exist yet.

    Idempotent: a second call returns the existing pool.

    Returns:
        Pool: The asyncpg connection pool.

    Raises:
        asyncpg.PostgresError: If the database rejects the connection.
        OSError: If the database host is unreachable.
    """
    global _pool

    if _pool is None:
        settings = get_settings()
        _pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=2,
            max_size=10,
            command_timeout=60,
        )

    return _pool


async def get_db_pool() -> Pool:
    """
    Return the connection pool, initializing it on first use.

    The pool must not be closed by callers; close_db() handles shutdown.
    """
    global _pool

    if _pool is None:
        await init_db()

    assert _pool is not None, "Pool should be initialized after init_db()"

    return _pool


async def close_db() -> None:
    """Close the pool gracefully and reset the singleton. Safe to call twice."""
    global _pool

    if _pool is not None:
        await _pool.close()
        _pool = None


def rows_affected(status: Optional[str]) -> int:
    """
    Extract the affected row count from an asyncpg command status string.

    Examples:
        >>> rows_affected('UPDATE 5')
        5
        >>> rows_affected('INSERT 0 1')
        1
        >>> rows_affected(None)
        0
    """
    if not status:
        return 0
    try:
        return int(str(status).split()[-1])
    except ValueError:
        return 0
