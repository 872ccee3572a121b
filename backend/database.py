"""
Async Postgres engine and session helpers

The sync job is the only writer. It runs as a short-lived cron request, so
the pool stays small; behind the Supabase session pooler it is smaller still.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from config import Config
from utils.logger import get_logger

logger = get_logger(__name__)

# (pool_size, max_overflow, pool_recycle seconds, pool_timeout seconds)
POOLER_LIMITS = (3, 2, 180, 5)
DIRECT_LIMITS = (5, 5, 1800, 10)


def _async_url(url: str) -> str:
    """Point a plain postgres URL at the asyncpg driver"""
    for prefix in ("postgresql://", "postgres://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def _build_engine():
    pool_size, max_overflow, pool_recycle, pool_timeout = POOLER_LIMITS if Config.USE_POOLER else DIRECT_LIMITS
    logger.info(
        f"🔗 Database engine ({'pooler' if Config.USE_POOLER else 'direct'}): "
        f"pool_size={pool_size}, max_overflow={max_overflow}"
    )
    return create_async_engine(
        _async_url(Config.get_database_url()),
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=pool_recycle,
        pool_timeout=pool_timeout,
        # Statement cache breaks behind pgbouncer-style poolers
        connect_args={"timeout": 10, "command_timeout": 60, "statement_cache_size": 0},
    )


async_engine = _build_engine()

AsyncSessionLocal = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

Base = declarative_base()


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Session for one unit of sync work; rolled back if the block raises

    Usage:
        async with get_db_session() as db:
            await db.execute(...)
            await db.commit()
    """
    session = AsyncSessionLocal()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
