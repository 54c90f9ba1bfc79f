"""Core application utilities.

FastAPI dependencies live in ``core.dependencies``; they wire the services
package, which itself imports ``core.config``, so they are not re-exported here.
"""

from .config import Settings, get_settings
from .database import async_session_factory, close_db, engine, get_session, init_db

__all__ = [
    "Settings",
    "get_settings",
    "engine",
    "async_session_factory",
    "get_session",
    "init_db",
    "close_db",
]
