"""Run one daily feedback batch: python -m diary_feedback.queue"""

import asyncio
import json
import signal
import sys
from datetime import UTC, datetime

from diary_feedback.core.config import get_settings
from diary_feedback.core.logging import get_logger, setup_logging
from diary_feedback.db.connection import close_db_pool, create_db_pool
from diary_feedback.llm.factory import build_llm_provider
from diary_feedback.models.schemas import RunResult
from diary_feedback.queue.scheduler import build_scheduler

logger = get_logger(__name__)


async def run_once(reference_instant: datetime | None = None) -> int:
    """Run the batch and print its report; returns the process exit code."""
    settings = get_settings()
    started_at = datetime.now(UTC)
    pool = None
    provider = None
    try:
        pool = await create_db_pool(settings)
        provider = build_llm_provider(settings)
        scheduler = await build_scheduler(pool, provider, settings)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, scheduler.request_stop)
            except NotImplementedError:
                # Windows event loops have no signal handler support
                logger.debug(f"Signal handler for {sig.name} not supported on this platform")

        result = await scheduler.run(reference_instant)
    except Exception as e:
        logger.error(f"Could not start daily feedback batch: {e}", exc_info=True)
        result = RunResult(success=False, started_at=started_at, error=f"batch setup failed: {e}")
    finally:
        if provider is not None:
            await provider.close()
        await close_db_pool(pool)

    report = result.model_dump(mode="json")
    report["degraded"] = result.degraded
    print(json.dumps(report, ensure_ascii=False, indent=2))
    return 0 if result.success else 1


def main() -> None:
    setup_logging()
    reference_instant = None
    if len(sys.argv) > 1:
        try:
            reference_instant = datetime.fromisoformat(sys.argv[1])
        except ValueError:
            print(f"Invalid reference instant: {sys.argv[1]} (expected ISO 8601)")
            print("Usage: python -m diary_feedback.queue [reference_instant]")
            sys.exit(2)

    try:
        sys.exit(asyncio.run(run_once(reference_instant)))
    except KeyboardInterrupt:
        logger.info("Batch interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
