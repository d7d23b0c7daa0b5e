"""Async SQLAlchemy engine, declarative base, and session factory.

Provides:
- Base: Declarative base for all integration tables
- get_engine(): Lazily created async engine singleton
- get_session_factory(): async_sessionmaker bound to the global engine (repository session_factory)
- session_factory_for(): async_sessionmaker bound to a specific engine
- init_db() / close_db(): Lifespan hooks
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.DATABASE_URL)
    return _engine


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine for the given URL.

    SQLite connections get foreign key enforcement switched on so the
    ON DELETE CASCADE clauses behave the same as on PostgreSQL.
    """
    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=False, **kwargs)

        @event.listens_for(engine.sync_engine, "connect")
        def enable_sqlite_fks(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_async_engine(
        url,
        pool_size=20,
        max_overflow=10,
        echo=False,
        **kwargs,
    )


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all persisted models."""


# ── Session Factory ─────────────────────────────────────────────────────────


def session_factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to a specific engine.

    Callers open sessions with `async with factory() as session:` so each
    session is closed before the calling coroutine returns.
    """
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the global engine."""
    return session_factory_for(get_engine())


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all tables if they don't exist."""
    # Importing models registers them on Base.metadata
    from src.app.integrations import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
