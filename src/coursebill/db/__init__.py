"""Database connection, session management and the unit-of-work helper."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from coursebill.core import get_logger, settings
from coursebill.utils.timestamps import utcnow

logger = get_logger(__name__)

# Global engine instance
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None

PARTITIONED_TABLES = {
    "orders": "created_year",
    "order_items": "order_year",
}


def get_engine() -> AsyncEngine:
    """
    Get or create the database engine.

    Returns:
        AsyncEngine instance
    """
    global _engine

    if _engine is None:
        database_url = settings.database_url

        kwargs = {}
        if settings.is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
        else:
            kwargs["pool_size"] = settings.database_pool_size
            kwargs["max_overflow"] = settings.database_max_overflow

        _engine = create_async_engine(
            database_url,
            echo=settings.environment == "development",
            pool_pre_ping=True,
            **kwargs,
        )
        logger.info("Database engine created", url=_engine.url.render_as_string(hide_password=True))

    return _engine


def get_session_factory() -> async_sessionmaker:
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session.

    Yields:
        AsyncSession instance
    """
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


get_db_session = get_session


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """
    Run a block as one unit of work.

    Commits when the block exits normally; rolls back every change made in
    the block and re-raises when it raises.
    """
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise


async def close_db() -> None:
    """Close the database connection."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed")


async def create_tables(partition_years: int = 3) -> None:
    """
    Create all database tables.

    On PostgreSQL the year-partitioned ledger tables also get one partition
    per year from last year through `partition_years` ahead, plus a default
    partition so inserts never fail for lack of a matching range.
    """
    from coursebill.models import Base

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        if conn.dialect.name == "postgresql":
            this_year = utcnow().year
            for table in PARTITIONED_TABLES:
                for year in range(this_year - 1, this_year + partition_years + 1):
                    await conn.execute(
                        text(
                            f"CREATE TABLE IF NOT EXISTS {table}_{year} PARTITION OF {table} "
                            f"FOR VALUES FROM ({year}) TO ({year + 1})"
                        )
                    )
                await conn.execute(
                    text(f"CREATE TABLE IF NOT EXISTS {table}_default PARTITION OF {table} DEFAULT")
                )
    logger.info("Database tables created")
