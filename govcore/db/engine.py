"""Database and Redis handles shared by the API process and the CLI.

PostgreSQL (asyncpg) is the production store: the ledger relies on its row
locks and unique constraints. SQLite (aiosqlite) URLs are accepted for local
runs and tests, without pool sizing.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from govcore.config import settings


def _engine_options(url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"echo": settings.log_level == "DEBUG"}
    if make_url(url).get_backend_name() == "sqlite":
        return options
    options.update(
        pool_size=settings.db.db_pool_size,
        max_overflow=settings.db.db_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    return options


engine: AsyncEngine = create_async_engine(settings.db.database_url, **_engine_options(settings.db.database_url))

# expire_on_commit=False: services commit denials mid-request and keep using the rows
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request.

    Commits on success and rolls back on any exception, so a governed
    operation that fails part-way leaves behind only the facts the services
    committed themselves (policy denials, execution failures).
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# Endpoint throttles only; governance state never lives in Redis
redis_client: aioredis.Redis = aioredis.from_url(
    settings.db.redis_url,
    decode_responses=True,
)


async def init_db() -> None:
    """Verify connectivity on startup.

    Outside production the governance tables are created directly; production
    schemas come from `alembic upgrade head`.
    """
    from govcore.models import Base

    async with engine.begin() as conn:
        if not settings.is_production:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    await engine.dispose()
    await redis_client.aclose()
