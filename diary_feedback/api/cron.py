"""Cron trigger for the nightly feedback batch."""

import secrets
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from diary_feedback.core.config import get_settings
from diary_feedback.core.logging import get_logger
from diary_feedback.queue.scheduler import run_daily_batch

logger = get_logger(__name__)
router = APIRouter()


def verify_cron_secret(authorization: Optional[str]) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``."""
    settings = get_settings()
    if not settings.cron_secret:
        logger.error("CRON_SECRET is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not secrets.compare_digest(authorization, expected):
        logger.warning("Unauthorized cron request")
        raise HTTPException(status_code=401, detail="Unauthorized")


@router.post("/cron/daily-feedback")
async def trigger_daily_feedback(
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """Run the daily feedback batch and return its report."""
    verify_cron_secret(authorization)

    logger.info("Daily feedback batch triggered by cron")
    try:
        result = await run_daily_batch(
            pool=request.app.state.db_pool,
            provider=request.app.state.llm_provider,
            settings=get_settings(),
        )
    except Exception as e:
        logger.error(f"Daily feedback batch crashed: {e}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Daily feedback batch failed"},
        )

    body = result.model_dump(mode="json")
    body["degraded"] = result.degraded
    return JSONResponse(status_code=200 if result.success else 500, content=body)


@router.get("/cron/daily-feedback")
async def daily_feedback_status():
    """Liveness check for the cron endpoint."""
    return {"status": "ok", "endpoint": "daily-feedback", "methods": ["POST"]}
