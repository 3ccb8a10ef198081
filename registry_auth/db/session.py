"""
Database Sessions

One async engine per process, sized from Settings. Request handlers get a
session through ``get_db``, which commits on success so the provisioning and
invitation services can rely on SAVEPOINTs and row locks inside a single
transaction. Scripts use ``get_async_session``.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from registry_auth.config import Settings, get_settings

logger = logging.getLogger(__name__)


def engine_options(settings: Settings) -> dict:
    """Keyword arguments for create_async_engine; SQLite gets no queue pool."""
    options = {"echo": settings.debug, "pool_pre_ping": True}
    if make_url(settings.database_url).get_backend_name() == "sqlite":
        return options
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout_seconds,
        pool_recycle=settings.db_pool_recycle_seconds,
    )
    return options


def build_engine(settings: Settings) -> AsyncEngine:
    options = engine_options(settings)
    logger.debug(
        f"Database engine for {make_url(settings.database_url).render_as_string(hide_password=True)} "
        f"(pool_size={options.get('pool_size')}, max_overflow={options.get('max_overflow')})"
    )
    return create_async_engine(settings.database_url, **options)


engine = build_engine(get_settings())

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one transaction per request."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Standalone transactional session for scripts such as the seeder."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
