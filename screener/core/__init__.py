"""
Core infrastructure package for the signal engine.

Provides:
- Configuration management via pydantic-settings
- Async PostgreSQL database connectivity via asyncpg
- FastAPI dependency injection utilities

Re-exports the commonly used pieces so callers can write:

    from screener.core import get_settings, get_db_pool, DBSessionDep
"""

from screener.core.config import Settings, get_settings
from screener.core.database import init_db, close_db, get_db_pool
from screener.core.dependencies import (
    get_db_session,
    get_settings_dependency,
    SettingsDep,
    DBSessionDep,
)

__all__ = [
    "Settings",
    "get_settings",
    "init_db",
    "close_db",
    "get_db_pool",
    "get_db_session",
    "get_settings_dependency",
    "SettingsDep",
    "DBSessionDep",
]
