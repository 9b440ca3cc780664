"""Async SQLAlchemy engine and session factory.

Lazily built from settings so importing the app never opens a pool.
Tests build their own factory over in-memory SQLite instead.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings

SessionFactory = async_sessionmaker[AsyncSession]


def build_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite needs cross-thread access for aiosqlite."""
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, connect_args={"check_same_thread": False})
    return create_async_engine(url, echo=echo, pool_pre_ping=True, pool_recycle=3600)


def build_sessionmaker(engine: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


_sessionmaker: SessionFactory | None = None


def get_sessionmaker() -> SessionFactory:
    """Lazy-init singleton session factory."""
    global _sessionmaker  # noqa: PLW0603
    if _sessionmaker is None:
        _sessionmaker = build_sessionmaker(
            build_engine(settings.database_url, echo=settings.database_echo)
        )
    return _sessionmaker
