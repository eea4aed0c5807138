"""
Engine and session factory for the payments database.

PostgreSQL (asyncpg) in deployment; SQLite (aiosqlite) is accepted for local
runs and tests, where connection pooling options do not apply.
"""
from typing import Any

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from redcart.config import Settings, get_settings
from redcart.database.models import Base

logger = structlog.get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def create_engine_for(settings: Settings) -> AsyncEngine:
    """
    Build an async engine from settings.

    Args:
        settings: Application settings

    Returns:
        AsyncEngine: Engine for ``settings.database_url``
    """
    url = make_url(settings.database_url)
    options: dict[str, Any] = {"echo": settings.database_echo}
    if url.get_backend_name() == "sqlite":
        # Concurrent callback deliveries wait on the file lock instead of failing
        options["connect_args"] = {"timeout": 15}
    else:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
    logger.debug("database_engine_created", backend=url.get_backend_name(), database=url.database)
    return create_async_engine(url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to ``engine``. Loaded rows stay usable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = create_engine_for(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory used by services that are not handed one."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


async def init_db() -> None:
    """
    Create missing tables.

    Schema changes in deployed databases go through the Alembic revisions;
    this only covers a fresh local database.
    """
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None
