"""Database engine and session management."""

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from capture_service.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory used by every service; objects stay usable after commit."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session_maker = create_session_factory(engine)


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create database tables that do not exist yet."""
    # Models must be imported so their tables are registered on Base.metadata
    from capture_service.db import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
