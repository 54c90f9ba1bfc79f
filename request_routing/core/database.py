"""Async database engine and sessions for the routing service.

Rule writes made through a request-scoped session commit when the endpoint
returns. Decision records commit on their own (see ``SqlDecisionStore``) so a
routing decision is durable before the response is sent. Collaborator
adapters open short-lived sessions from ``async_session_factory``.
"""

from collections.abc import AsyncGenerator
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def _engine_options(url: str) -> dict:
    options = {"echo": settings.database_echo, "pool_pre_ping": True}
    # SQLite (tests, local runs) uses a static pool without sizing knobs
    if url.startswith("postgresql"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_recycle=300,
            pool_timeout=30,
        )
    return options


engine = create_async_engine(
    settings.database_url_async, **_engine_options(settings.database_url_async)
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session: commit on success, roll back on any error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Routing request rolled back after database error: {e}")
            raise
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create the routing tables when they do not exist yet."""
    from ..models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Routing tables ready")


async def close_db() -> None:
    await engine.dispose()
