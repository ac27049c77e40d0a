"""
Database engine and session management for the document cache.

Flow:
  1. runtime.open_session() builds one AsyncEngine per host session from
     ``cache_database_url`` (SQLite through the aiosqlite driver).
  2. init_cache_schema() creates the cache table if it does not exist.
  3. Each DocumentCache receives the shared async_sessionmaker and opens a
     short-lived session per operation.
  4. On shutdown the engine is disposed, closing the pooled connection.

SQLite is single-writer; one engine per process keeps writes serialised
through its pool.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from docdigest.models.cache import Base

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def create_cache_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for ``url``, creating the parent directory of a
    file-backed SQLite database first.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        url,
        pool_pre_ping=True,   # detect stale connections before use
        echo=echo,            # log SQL in dev
    )
    logger.info("Cache engine created | backend=%s", parsed.get_backend_name())
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_cache_schema(engine: AsyncEngine) -> None:
    """Create the cache table (idempotent)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Cache schema ready")


# ---------------------------------------------------------------------------
# Health check helper
# ---------------------------------------------------------------------------

async def check_cache_health(engine: AsyncEngine) -> dict:
    """Ping the cache database."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("Cache health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
