from functools import lru_cache
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
import structlog

from approval_engine.config import settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


def _split_ssl(url: URL) -> tuple[URL, dict[str, Any]]:
    """asyncpg rejects ``sslmode`` in the query string; move it to connect_args."""
    sslmode = url.query.get("sslmode")
    connect_args: dict[str, Any] = {}
    if sslmode:
        url = url.difference_update_query(["sslmode"])
        if sslmode != "disable":
            connect_args["ssl"] = "require"
    elif settings.is_production:
        connect_args["ssl"] = "require"
    return url, connect_args


def _engine_kwargs(url: URL) -> dict[str, Any]:
    if url.get_backend_name() == "sqlite":
        return {"echo": settings.DEBUG}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": 30,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
        "echo": settings.DEBUG,
    }


@lru_cache()
def get_engine() -> AsyncEngine:
    """Created on first use so importing the package never needs a database."""
    url, connect_args = _split_ssl(make_url(settings.DATABASE_URL))
    logger.info(
        "approval_db_engine_created",
        backend=url.get_backend_name(),
        host=url.host,
        database=url.database,
    )
    return create_async_engine(url, connect_args=connect_args, **_engine_kwargs(url))


@lru_cache()
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


async def init_db():
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("approval_db_connected")


async def close_db():
    await get_engine().dispose()
    get_session_factory.cache_clear()
    get_engine.cache_clear()
    logger.info("approval_db_disconnected")
