"""Database migration utilities."""

from pathlib import Path

from asyncpg import Pool

from diary_feedback.core.logging import get_logger

logger = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "migrations"


async def run_migrations(pool: Pool, migrations_dir: Path = MIGRATIONS_DIR) -> None:
    """Run database migrations in order."""
    # Get all migration files sorted by name
    migration_files = sorted(migrations_dir.glob("*.sql"), key=lambda x: x.name)

    if not migration_files:
        logger.warning("No migration files found", path=str(migrations_dir))
        return

    logger.info(f"Found {len(migration_files)} migration file(s)")

    async with pool.acquire() as conn:
        for migration_file in migration_files:
            logger.info(f"Running migration: {migration_file.name}")
            try:
                sql = migration_file.read_text(encoding="utf-8")
                # Execute migration within a transaction
                async with conn.transaction():
                    await conn.execute(sql)
                logger.info(f"Migration {migration_file.name} completed successfully")
            except Exception as e:
                logger.error(f"Migration {migration_file.name} failed: {e}")
                raise


async def check_migration_status(pool: Pool) -> bool:
    """Check if migrations have been run by checking if the queue table exists."""
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("""
                SELECT EXISTS (
                    SELECT FROM information_schema.tables
                    WHERE table_name = 'feedback_generation_queue'
                );
            """)
            return result is True
    except Exception as e:
        logger.error(f"Error checking migration status: {e}")
        return False
