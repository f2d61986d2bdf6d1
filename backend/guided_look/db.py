"""Database configuration and session management for FastAPI.

This module uses SQLAlchemy's asyncio support with asyncpg to connect to
PostgreSQL.  ``GUIDED_LOOK_DATABASE_URL`` (or ``DATABASE_URL``) wins when
set; otherwise the URL is assembled from the ``DB_*`` environment
variables, using the Cloud SQL Unix socket when an instance connection
name is present.
"""

import os
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .models import Base
from .settings import settings


def _make_database_url() -> str:
    """Construct a database URL based on settings and environment variables.

    - GUIDED_LOOK_DATABASE_URL / DATABASE_URL: full SQLAlchemy URL.
    - CLOUDSQL_INSTANCE_CONNECTION_NAME: connect through a Unix socket.
    - DB_USER, DB_PASSWORD, DB_NAME, DB_HOST, DB_PORT: TCP fallback.
    """
    if settings.database_url:
        return settings.database_url
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD", "")
    db_name = os.getenv("DB_NAME", "postgres")
    instance_connection_name = os.getenv("CLOUDSQL_INSTANCE_CONNECTION_NAME")
    if instance_connection_name:
        return (
            f"postgresql+asyncpg://{user}:{password}@/{db_name}?host=/cloudsql/{instance_connection_name}"
        )
    host = os.getenv("DB_HOST", "127.0.0.1")
    port = os.getenv("DB_PORT", "5432")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"


DATABASE_URL = _make_database_url()
engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def init_db() -> None:
    """Create the workflow, ledger and collection tables if needed."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Provide a transactional scope for database operations.

    Used as a FastAPI dependency.  Uncommitted work is rolled back when
    the request handler raises.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
