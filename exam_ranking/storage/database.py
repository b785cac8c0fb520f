"""
Database - SQLAlchemy async setup and session management

System Design Concept:
    The relational store is the source of truth for every attempt and every
    point balance. The ranking cache is always rebuildable from it.

At Scale:
    - Read replicas serve the rebuild-on-miss aggregations
    - Partition test_outcomes by course_id
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from exam_ranking.config import settings

# SQLAlchemy base for ORM models
Base = declarative_base()


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite (used by tests and the demo) gets no pool sizing; server databases
    get a connection pool with health checks.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=(settings.log_level == "DEBUG"))
    return create_async_engine(
        database_url,
        echo=(settings.log_level == "DEBUG"),
        pool_size=20,  # Connection pool size
        max_overflow=10,  # Max connections beyond pool_size
        pool_pre_ping=True,  # Test connection health before using
    )


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# Async database engine
engine = build_engine(settings.database_url)

# Session factory
AsyncSessionLocal = build_sessionmaker(engine)


async def init_db(bind: AsyncEngine = engine):
    """
    Initialize database schema

    Creates all tables defined in schema.py
    """
    # Register ORM models on Base.metadata
    from exam_ranking.storage import schema  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(bind: AsyncEngine = engine):
    """Drop all tables (for testing)"""
    from exam_ranking.storage import schema  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
