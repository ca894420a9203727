"""Database engine, session factory and helpers."""

from typing import AsyncGenerator

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from scriptflow.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Declarative base for all models."""


engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
)

async_session_maker = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


def create_worker_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory for Celery tasks.

    Each task runs in its own event loop, so connections must not be pooled
    across tasks.
    """
    worker_engine: AsyncEngine = create_async_engine(
        settings.database_url,
        poolclass=NullPool,
    )
    return async_sessionmaker(worker_engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session."""
    async with async_session_maker() as session:
        yield session


async def init_db():
    """Create tables that do not exist yet."""
    from scriptflow.db import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def insert_ignoring_conflicts(db: AsyncSession, model):
    """``INSERT ... ON CONFLICT DO NOTHING`` for the session's dialect.

    Used for create-if-absent writes so concurrent writers converge without
    locking.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite.insert(model).on_conflict_do_nothing()
    raise NotImplementedError(f"Unsupported database dialect: {dialect}")
