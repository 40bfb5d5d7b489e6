"""
Database Connection Management

Async SQLAlchemy 2.0 engine and session handling for the warehouse.
Creates the star schema on first use and refuses to run against a warehouse
stamped with a different schema version.
"""

from typing import Optional

import structlog
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from delivery_warehouse.config import get_settings
from delivery_warehouse.database.models import Base, SchemaVersion, SCHEMA_VERSION
from delivery_warehouse.exceptions import SchemaVersionMismatch

logger = structlog.get_logger(__name__)

# Global engine
_engine: Optional[AsyncEngine] = None


async def ensure_schema(conn: AsyncConnection) -> None:
    """
    Create missing warehouse tables and verify the schema version stamp.

    Raises:
        SchemaVersionMismatch: If the warehouse was built with another version
    """
    await conn.run_sync(Base.metadata.create_all)

    stamped = (await conn.execute(select(SchemaVersion.version))).scalars().all()
    if not stamped:
        await conn.execute(SchemaVersion.__table__.insert().values(version=SCHEMA_VERSION))
        logger.info("Warehouse schema created", version=SCHEMA_VERSION)
    elif stamped != [SCHEMA_VERSION]:
        raise SchemaVersionMismatch(
            f"Warehouse schema version {stamped} does not match expected {SCHEMA_VERSION}"
        )


async def create_warehouse_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create an engine for the warehouse and make sure its schema exists.

    Args:
        url: SQLAlchemy async URL, defaults to the configured warehouse
        echo: Echo SQL statements, defaults to the configured value

    Returns:
        AsyncEngine: Engine bound to a warehouse with an up-to-date schema
    """
    settings = get_settings()
    url = url or settings.database.async_url

    engine = create_async_engine(
        url,
        echo=settings.database.echo if echo is None else echo,
        pool_pre_ping=True,
        poolclass=NullPool,
    )

    try:
        async with engine.begin() as conn:
            await ensure_schema(conn)
    except Exception as e:
        logger.error("Failed to prepare warehouse", error=str(e), error_type=type(e).__name__)
        await engine.dispose()
        raise

    logger.info("Warehouse connection established", dialect=engine.dialect.name)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory used for merge cycles"""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(url: Optional[str] = None) -> AsyncEngine:
    """
    Initialize the process-wide warehouse engine.

    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine

    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine

    _engine = await create_warehouse_engine(url)
    return _engine


async def close_database() -> None:
    """Dispose of the process-wide engine."""
    global _engine

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Database connection pool closed")


def get_engine() -> AsyncEngine:
    """
    Get the database engine.

    Raises:
        RuntimeError: If database is not initialized
    """
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


async def check_database_health(engine: AsyncEngine) -> bool:
    """Return True when the warehouse answers a trivial query"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Warehouse health check failed", error=str(e))
        return False
