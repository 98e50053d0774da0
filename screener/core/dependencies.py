"""
FastAPI dependency injection for the signal engine.

Provides database connections and settings to endpoint handlers so they can be
overridden in tests via app.dependency_overrides.

Key Dependencies Provided:
- get_db_session: Async generator yielding a pooled database connection
- get_settings_dependency: Returns the cached Settings singleton
- DBSessionDep / SettingsDep: Annotated aliases for endpoint signatures

Usage:
    @router.get("/formulas")
    async def list_formulas(db: DBSessionDep, settings: SettingsDep):
        rows = await db.fetch("SELECT * FROM formulas")
"""

from typing import Annotated, AsyncGenerator

from asyncpg import Connection
from fastapi import Depends

from screener.core.config import Settings, get_settings
from screener.core.database import get_db_pool


async def get_db_session() -> AsyncGenerator[Connection, None]:
    """
    Yield a connection from the pool, released when the request completes.

    Yields:
        asyncpg.Connection: An active database connection.
    """
    pool = await get_db_pool()
    async with pool.acquire() as connection:
        yield connection


def get_settings_dependency() -> Settings:
    """
    Return the Settings singleton.

    Thin wrapper around get_settings() so tests can do:

        app.dependency_overrides[get_settings_dependency] = lambda: mock_settings
    """
    return get_settings()


SettingsDep = Annotated[Settings, Depends(get_settings_dependency)]

DBSessionDep = Annotated[Connection, Depends(get_db_session)]
