"""
Database Configuration

One async engine (connection pool) is shared by every project namespace.
Reference tables live in the default schema and are declared on ``Base``;
per-namespace work order tables are plain Core tables built on demand
(see ``fieldops.models.work_order``).

SECURITY:
- SQLAlchemy echo disabled in production to prevent credential leakage
- Connection string never logged
"""

import logging
import time

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from fieldops.config import settings

logger = logging.getLogger(__name__)


# Slow query logging
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info["query_start_time"] = time.monotonic()


def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    start = conn.info.get("query_start_time")
    if start is None:
        return
    duration_ms = (time.monotonic() - start) * 1000
    if duration_ms >= settings.SLOW_QUERY_THRESHOLD_MS:
        param_count = len(parameters) if parameters else 0
        truncated = statement[:200] + ("..." if len(statement) > 200 else "")
        logger.warning(
            "Slow query (%.0fms, %d params): %s", duration_ms, param_count, truncated
        )


def enable_slow_query_logging(async_engine: AsyncEngine) -> None:
    """Attach statement timing listeners to an engine."""
    event.listen(async_engine.sync_engine, "before_cursor_execute", _before_cursor_execute)
    event.listen(async_engine.sync_engine, "after_cursor_execute", _after_cursor_execute)


# Create async engine
# SECURITY: Use sqlalchemy_echo property which is disabled in production
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.sqlalchemy_echo,
    future=True,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_recycle=settings.DB_POOL_RECYCLE,  # Recycle connections to prevent stale connections
    pool_pre_ping=True,     # Test connection validity before use
)

enable_slow_query_logging(engine)
logger.info("Slow query logging enabled (threshold: %dms)", settings.SLOW_QUERY_THRESHOLD_MS)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Base class for the shared reference table models."""

    pass


async def init_db(bind: AsyncEngine = engine):
    """Create the shared reference tables (local development only; production uses Alembic)."""
    # Register every reference model on Base.metadata
    import fieldops.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
