"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from diary_feedback.api import cron
from diary_feedback.core.config import get_settings
from diary_feedback.core.logging import get_logger, setup_logging
from diary_feedback.db.connection import close_db_pool, create_db_pool
from diary_feedback.db.migrations import run_migrations
from diary_feedback.llm.factory import build_llm_provider

# Setup logging
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting application...")
    settings = get_settings()
    app.state.db_pool = await create_db_pool(settings)
    if settings.run_migrations_on_startup:
        await run_migrations(app.state.db_pool)
    app.state.llm_provider = build_llm_provider(settings)
    logger.info("Application started")
    yield
    # Shutdown
    logger.info("Shutting down application...")
    await app.state.llm_provider.close()
    await close_db_pool(app.state.db_pool)
    logger.info("Application shut down")


app = FastAPI(
    title="Diary Feedback Batch",
    description="Nightly persona feedback generation for diary entries",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {"message": "Diary Feedback Batch API", "version": "0.1.0"}


@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    try:
        async with request.app.state.db_pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return {"status": "healthy", "postgres": "connected"}
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }


app.include_router(cron.router, prefix="/api", tags=["cron"])
