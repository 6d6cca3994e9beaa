"""
Async engine and sessions for the worker.

Each job opens its own session through ``get_db_context``; the engine and
its pool are shared by the whole process and disposed on shutdown.
"""

import ssl
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from scanflow.core.config import settings
from scanflow.core.exceptions import PersistenceError
from scanflow.core.logging import get_logger

logger = get_logger(__name__)

# Connection-string options understood by libpq but rejected by asyncpg
_LIBPQ_ONLY = frozenset(
    {
        "sslmode",
        "channel_binding",
        "sslcert",
        "sslkey",
        "sslrootcert",
        "sslcrl",
        "target_session_attrs",
        "options",
        "application_name",
    }
)


def _ssl_argument(sslmode: str | None) -> ssl.SSLContext | str | None:
    """asyncpg ``ssl`` connect argument for a libpq ``sslmode``."""
    if sslmode == "require":
        # Encrypt without verifying, like libpq's require
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
        return context
    if sslmode in ("verify-ca", "verify-full"):
        return ssl.create_default_context()
    if sslmode == "prefer":
        return "prefer"
    return None


def split_connect_args(database_url: str) -> tuple[str, dict[str, Any]]:
    """
    Strip libpq-only query options from a connection string.

    Supabase hands out URLs ending in ``?sslmode=require``; asyncpg takes
    that setting as a connect argument instead.

    Returns:
        The cleaned URL and the connect_args for create_async_engine
    """
    parsed = urlparse(database_url)
    query = parse_qs(parsed.query)
    sslmode = query.get("sslmode", [None])[0]

    kept = {key: values for key, values in query.items() if key not in _LIBPQ_ONLY}
    url = urlunparse(parsed._replace(query=urlencode(kept, doseq=True)))

    connect_args: dict[str, Any] = {}
    ssl_arg = _ssl_argument(sslmode)
    if ssl_arg is not None:
        connect_args["ssl"] = ssl_arg
    return url, connect_args


def build_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the process-wide engine from settings."""
    url, connect_args = split_connect_args(database_url or settings.database_url)

    options: dict[str, Any] = {"echo": settings.debug}
    if connect_args:
        options["connect_args"] = connect_args

    if settings.environment == "test":
        options["poolclass"] = NullPool
    else:
        # Each in-flight job holds one connection
        options["pool_size"] = max(settings.db_pool_size, settings.worker_concurrency + 1)
        options["max_overflow"] = settings.db_max_overflow
        options["pool_timeout"] = settings.db_pool_timeout
        options["pool_pre_ping"] = True

    return create_async_engine(url, **options)


engine = build_engine()

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """
    Session scoped to one unit of work.

    Commits when the block exits cleanly and rolls back on error.

    Usage:
        async with get_db_context() as db:
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """
    Check that the database is reachable before polling starts.

    Raises:
        PersistenceError: If the connection check fails
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Failed to connect to database: {e}")
        raise PersistenceError("connect", e) from e
    logger.info("Database connection established")


async def close_db() -> None:
    """Dispose of pooled connections on shutdown."""
    await engine.dispose()
    logger.info("Database connections closed")
