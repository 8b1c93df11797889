"""PostgreSQL database connection."""

import asyncio

import asyncpg
from asyncpg import Pool

from diary_feedback.core.config import Settings
from diary_feedback.core.logging import get_logger

logger = get_logger(__name__)

# Errors that mean "the database cannot be reached right now" rather than a bad query
CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.UndefinedTableError,
    asyncpg.exceptions.InvalidPasswordError,
    asyncpg.exceptions.InvalidCatalogNameError,
    # 53xxx: too many connections, out of memory or disk
    asyncpg.exceptions.InsufficientResourcesError,
    # 57xxx: starting up, shutting down, admin shutdown
    asyncpg.exceptions.OperatorInterventionError,
)


async def create_db_pool(
    settings: Settings,
    max_retries: int = 5,
    retry_delay: float = 2,
) -> Pool:
    """Create a database connection pool with retry logic."""
    for attempt in range(max_retries):
        try:
            logger.info(f"Connecting to database (attempt {attempt + 1}/{max_retries})...")
            pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=settings.db_pool_min_size,
                max_size=settings.db_pool_max_size,
                command_timeout=60,
            )
            # Test connection
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            logger.info("Database connection pool created successfully")
            return pool
        except Exception as e:
            logger.warning(f"Database connection failed: {e}")
            if attempt < max_retries - 1:
                logger.info(f"Retrying in {retry_delay} seconds...")
                await asyncio.sleep(retry_delay)
            else:
                logger.error("Failed to connect to database after all retries")
                raise
    raise RuntimeError("max_retries must be at least 1")


async def close_db_pool(pool: Pool | None) -> None:
    """Close database connection pool."""
    if pool is not None:
        await pool.close()
