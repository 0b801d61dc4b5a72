"""
Database layer — async SQLAlchemy 2.0 (asyncpg in production, aiosqlite in dev/test).

Provides:
    • Async engine and session factory
    • Dependency injection for FastAPI routes
    • Portable column types (JSONB/JSON, UTC timestamps)
    • Dialect-aware INSERT .. ON CONFLICT (upserts, atomic counters)
    • Base model for ORM entities

Usage:
    from backend.app.core.database import Base, JSONType, UTCDateTime

    class Notification(Base):
        __tablename__ = "notifications"
        id = Column(String(36), primary_key=True)
        data = Column(JSONType, default=dict)
        created_at = Column(UTCDateTime, nullable=False)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from sqlalchemy import JSON, DateTime, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Column types ──

# JSONB on PostgreSQL (indexable), plain JSON everywhere else
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """
    Timestamp stored as naive UTC, returned as timezone-aware UTC.

    SQLite has no timezone support, so every value is normalised on the
    way in and re-tagged on the way out. Comparisons in SQL stay correct
    because all stored values share the same zone.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── Upsert ──

def dialect_insert(session: AsyncSession, model):
    """
    ``INSERT`` construct with ``on_conflict_do_*`` support for the session's
    dialect (PostgreSQL or SQLite).
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"No upsert support for dialect '{dialect}'")


# ── Engine ──

def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    SQLite connections run every transaction as ``BEGIN IMMEDIATE`` so that
    concurrent writers queue on the busy timeout instead of failing with
    "database is locked" when a read lock upgrades to a write lock.
    """
    if url.startswith("sqlite"):
        sqlite_engine = create_async_engine(url, echo=echo, future=True)

        @event.listens_for(sqlite_engine.sync_engine, "connect")
        def _disable_implicit_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(sqlite_engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return sqlite_engine

    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=echo,
        future=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)

# ── Session Factory ──
async_session_factory = build_session_factory(engine)


# ── Dependency ──
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: yields an async database session."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── Lifecycle ──
async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use Alembic in production)."""
    # Register ORM tables on Base.metadata before create_all
    from backend.app.notifications import records  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(bind: Optional[AsyncEngine] = None) -> None:
    """Dispose engine connections."""
    await (bind or engine).dispose()
    logger.info("Database connections closed")
