"""Database connection and session management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base


class DatabaseService:
    """Manages database connection and session lifecycle."""

    def __init__(self, url: str, *, echo: bool = False):
        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, pool_pre_ping=True)
        self.async_session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def initialize(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for database operations."""
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        await self.engine.dispose()


_db_service: Optional[DatabaseService] = None


def get_db_service() -> DatabaseService:
    if _db_service is None:
        raise RuntimeError("Database service not initialized")
    return _db_service


async def init_db_service(url: str, *, echo: bool = False) -> DatabaseService:
    global _db_service
    _db_service = DatabaseService(url, echo=echo)
    await _db_service.initialize()
    return _db_service


async def close_db_service() -> None:
    global _db_service
    if _db_service is not None:
        await _db_service.close()
        _db_service = None
