"""Engine and session lifecycle for the ledger database."""

import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from ..config import normalize_database_url
from . import models

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def is_memory_sqlite(database_url: str) -> bool:
    """True for SQLite URLs that name no file, i.e. a per-connection in-memory database."""
    url = make_url(database_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async engine for the ledger.

    An in-memory SQLite database only exists inside its one connection, so it is
    pinned with StaticPool. File-backed SQLite and PostgreSQL get a connection per
    session; the conditional updates and unique indexes rely on sessions having
    separate transactions.

    Args:
        database_url: Connection URL. Defaults to ``DATABASE_URL`` from the environment.
        echo: Log every SQL statement.
        pool_size: Connections kept open by the pool.
        max_overflow: Extra connections allowed beyond ``pool_size``.
    """
    url = database_url or normalize_database_url(os.getenv("DATABASE_URL"))

    if is_memory_sqlite(url):
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def _make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """Return a factory bound to ``engine``, or the global one set up by init_db()."""
    if engine is not None:
        return _make_session_factory(engine)

    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_tables: bool = True,
) -> None:
    """Open the global engine, creating missing tables unless ``create_tables`` is False."""
    global _engine, _session_factory

    _engine = create_async_engine(database_url, echo=echo)
    _session_factory = _make_session_factory(_engine)

    if create_tables:
        async with _engine.begin() as conn:
            await conn.run_sync(models.Base.metadata.create_all)
        logger.info("Ledger tables created")

    logger.info(f"Database ready ({_engine.url.get_backend_name()})")


async def close_db() -> None:
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed when the handler returns."""
    async with get_async_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for work outside a request, such as the CLI commands.

    Example:
        async with get_db_context() as db:
            report = await SubscriptionSweeper(db).sweep()
    """
    async with get_async_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
