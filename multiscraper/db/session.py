"""Database engine and session management."""

import asyncio
import logging
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from multiscraper.config import settings
from multiscraper.db.models import Base
from multiscraper.errors import PersistenceError

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    kwargs = {"echo": settings.db_echo}
    if url.startswith("sqlite"):
        # aiosqlite runs each connection in its own thread
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_pre_ping"] = True
    return kwargs


def _ensure_sqlite_dir(url: str) -> None:
    """Create the parent directory of a file-based sqlite database."""
    prefix = "sqlite+aiosqlite:///"
    if not url.startswith(prefix):
        return
    path = url[len(prefix):]
    if not path or path == ":memory:":
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)


_ensure_sqlite_dir(settings.database_url)

engine: AsyncEngine = create_async_engine(
    settings.database_url, **_engine_kwargs(settings.database_url)
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Yield a session for a FastAPI request."""
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(
    db_engine: AsyncEngine | None = None,
    max_attempts: int | None = None,
    backoff_seconds: float | None = None,
) -> None:
    """
    Connect to the database and create missing tables.

    Connection failures are retried with exponential backoff.

    Args:
        db_engine: Engine to initialize (defaults to the module engine)
        max_attempts: Attempts before giving up
        backoff_seconds: Initial delay between attempts, doubled each retry

    Raises:
        PersistenceError: If every attempt failed
    """
    db_engine = db_engine or engine
    attempts = max_attempts or settings.db_connect_max_attempts
    delay = settings.db_connect_backoff_seconds if backoff_seconds is None else backoff_seconds

    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            async with db_engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database ready (attempt %d/%d)", attempt, attempts)
            return
        except (SQLAlchemyError, OSError) as e:
            last_error = e
            logger.warning(
                "Database connection attempt %d/%d failed: %s", attempt, attempts, e
            )
            if attempt < attempts:
                await asyncio.sleep(delay)
                delay *= 2

    raise PersistenceError(
        f"Could not connect to database after {attempts} attempts: {last_error}"
    )
