"""
Database Connection and Session Management
"""
import enum
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import Enum as SQLEnum
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()


def StatusEnum(enum_cls: type[enum.Enum], length: int = 30) -> SQLEnum:
    """String-backed enum column storing the member values ("pending", not "PENDING")"""
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def get_task_session_factory():
    """
    Fresh session factory for Celery tasks.

    Builds an engine bound to the task's own event loop, avoiding the
    "attached to a different loop" error when module-level engines are reused
    across the loops Celery tasks create.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )
    task_session_maker = async_sessionmaker(
        bind=task_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    try:
        yield task_session_maker
    finally:
        await task_engine.dispose()
