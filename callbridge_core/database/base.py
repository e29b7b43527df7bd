"""
Durable Storage

Declarative base and async engine for the call history tables. Any SQLAlchemy
async URL works; plain ``sqlite://`` and ``postgresql://`` URLs are mapped to
their async drivers.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, Dict, Optional

import structlog
from sqlalchemy import DateTime, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

logger = structlog.get_logger(__name__)

ASYNC_DRIVERS: Dict[str, str] = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for call history models."""


class RecordedAtMixin:
    """Row bookkeeping, separate from the call's own millisecond timestamps."""

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )


def to_async_url(database_url: str) -> str:
    for sync_prefix, async_prefix in ASYNC_DRIVERS.items():
        if database_url.startswith(sync_prefix):
            return async_prefix + database_url[len(sync_prefix):]
    return database_url


class DatabaseManager:
    """
    Owns the engine and session factory for one worker.

    The engine is created lazily on first use. Pool sizing only applies to
    server databases; SQLite runs without a pool.

    Usage:
        db = DatabaseManager(settings.database_url)
        await db.create_all()

        async with db.session() as session:
            session.add(record)
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        pool_recycle: int = 1800,
        echo: bool = False,
    ):
        self._url = to_async_url(database_url)
        self._pool_options = {
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_recycle": pool_recycle,
            "pool_pre_ping": True,
        }
        self._echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker] = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            options = {} if self._url.startswith("sqlite") else self._pool_options
            self._engine = create_async_engine(self._url, echo=self._echo, **options)
            logger.debug("database_engine_created", dialect=self._engine.dialect.name)
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error."""
        if self._sessions is None:
            self._sessions = async_sessionmaker(self.engine, expire_on_commit=False)

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def health_check(self) -> bool:
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.warning("database_unhealthy", error=str(e))
            return False
        return True

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None


__all__ = ["Base", "RecordedAtMixin", "DatabaseManager", "to_async_url"]
