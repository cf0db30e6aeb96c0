"""
Points Engine — Database Engine, Sessions and Unit of Work
==========================================================

What:  Async SQLAlchemy engine/session factories, the declarative Base, the
       FastAPI read-session dependency and the UnitOfWork used by every write.
Why:   A point movement is a balance update plus a transaction row; both must
       commit together or not at all. UnitOfWork is that commit/rollback contract.
How:   The lifespan builds one engine and one session factory per process and
       stores them on the service container; nothing here runs at import time.

Connection Pooling Strategy:
    pool_size=20, max_overflow=10 (at most 30 connections), pool_pre_ping and a
    one-hour pool_recycle. SQLite URLs (tests) skip the pool arguments.
"""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from points_engine.config import Settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy ORM models.

    Shares one metadata object, which Alembic reads for --autogenerate.
    """
    pass


# ── Engine & Session Factory ──────────────────────────────────────────────
def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create the async engine for the configured database.

    Pool sizing only applies to server databases; SQLite uses its own pool.
    """
    kwargs = {"echo": settings.log_level == "DEBUG"}
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=settings.db_pool_pre_ping,
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: ORM objects stay readable after the unit of work commits
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Unit of Work ──────────────────────────────────────────────────────────
class UnitOfWork:
    """
    One atomic unit of work against the store.

    Usage:
        async with UnitOfWork(session_factory) as session:
            await ledger.apply_movement(session, ...)
            session.add(book)

    Contract:
        - clean exit   → COMMIT (every write inside becomes visible at once)
        - any exception → ROLLBACK (no write inside is ever visible), re-raised
        - always        → session closed, connection returned to the pool

    Readers never observe a balance change without its transaction row, or a
    transaction row without its balance change.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> AsyncSession:
        self.session = self._session_factory()
        return self.session

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        session = self.session
        try:
            if exc_type is None:
                await session.commit()
            else:
                await session.rollback()
                logger.debug("Unit of work rolled back: %s", exc_type.__name__)
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
            self.session = None
        return False


# ── Read Session Dependency ───────────────────────────────────────────────
async def open_read_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yields a session for read-only request handlers.

    Writes never go through this session; they use UnitOfWork so the commit
    happens before the response is built.
    """
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
