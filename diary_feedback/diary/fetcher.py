"""Diary entry fetching for a resolved time window."""

import asyncio
from collections import Counter
from datetime import UTC, datetime, timedelta

from asyncpg import Pool
from pydantic import BaseModel, Field

from diary_feedback.core.errors import StoreUnavailableError
from diary_feedback.core.logging import get_logger
from diary_feedback.db.connection import CONNECTION_ERRORS
from diary_feedback.diary.time_window import TimeWindow
from diary_feedback.models.schemas import DiaryEntry, Mood

logger = get_logger(__name__)

# Sample entries get negative ids so they can never collide with real rows
SAMPLE_ID_BASE = -1000


class DiaryFetchResult(BaseModel):
    """Entries found for one user in one window."""

    user_id: str
    window: TimeWindow
    entries: list[DiaryEntry] = Field(default_factory=list)
    total_count: int = 0
    degraded: bool = False


class DiaryStore:
    """Read-only access to the diaries table."""

    def __init__(self, pool: Pool):
        self.pool = pool

    async def query(self, user_id: str, start: datetime, end: datetime) -> list[DiaryEntry]:
        """Return a user's entries created in [start, end), oldest first."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, user_id, content, mood, created_at
                    FROM diaries
                    WHERE user_id = $1
                      AND created_at >= $2
                      AND created_at < $3
                    ORDER BY created_at ASC
                    """,
                    user_id,
                    start,
                    end,
                )
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError("diary store", str(e)) from e

        return [DiaryEntry(**dict(row)) for row in rows]


def sample_entries(user_id: str, window: TimeWindow) -> list[DiaryEntry]:
    """Clearly-marked stand-in entries for development runs without a diary store."""
    return [
        DiaryEntry(
            id=SAMPLE_ID_BASE - 1,
            user_id=user_id,
            content=(
                "Spent a good afternoon at a cafe with a friend talking about a new "
                "project. It felt exciting to plan something together."
            ),
            mood=Mood.HAPPY,
            created_at=window.end - timedelta(hours=5),
            is_sample=True,
        ),
        DiaryEntry(
            id=SAMPLE_ID_BASE - 2,
            user_id=user_id,
            content=(
                "Work was tiring today, but dinner with family helped me recharge. "
                "I want to keep going tomorrow."
            ),
            mood=Mood.NEUTRAL,
            created_at=window.end - timedelta(hours=2),
            is_sample=True,
        ),
    ]


class DiaryFetcher:
    """Loads a user's entries for a window, degrading when the store is down."""

    def __init__(self, store: DiaryStore, fallback_mode: str = "empty"):
        if fallback_mode not in ("sample", "empty"):
            raise ValueError(f"Invalid fallback mode: {fallback_mode}")
        self.store = store
        self.fallback_mode = fallback_mode

    async def fetch_entries_in_window(self, user_id: str, window: TimeWindow) -> DiaryFetchResult:
        """
        Fetch the entries a user wrote inside ``window``.

        When the diary store is unavailable the result is degraded: sample
        entries in ``sample`` mode, nothing in ``empty`` mode.
        """
        logger.info(
            f"Fetching diary entries for user {user_id}",
            user_id=user_id,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
            window_start_local=window.start_local.isoformat(),
            window_end_local=window.end_local.isoformat(),
        )

        try:
            entries = await self.store.query(user_id, window.start, window.end)
        except StoreUnavailableError as e:
            return self._degraded_result(user_id, window, e)

        if entries:
            logger.info(
                f"Found {len(entries)} diary entries for user {user_id}",
                user_id=user_id,
                first_entry=entries[0].created_at.isoformat(),
                last_entry=entries[-1].created_at.isoformat(),
            )
        else:
            logger.info(f"No diary entries found for user {user_id} in window", user_id=user_id)

        return DiaryFetchResult(
            user_id=user_id,
            window=window,
            entries=entries,
            total_count=len(entries),
        )

    def _degraded_result(
        self, user_id: str, window: TimeWindow, error: StoreUnavailableError
    ) -> DiaryFetchResult:
        if self.fallback_mode == "sample":
            entries = sample_entries(user_id, window)
            logger.warning(
                f"Diary store unavailable, using {len(entries)} SAMPLE entries for user {user_id}",
                user_id=user_id,
                error=str(error),
                fallback_mode=self.fallback_mode,
            )
        else:
            entries = []
            logger.error(
                f"Diary store unavailable, returning no entries for user {user_id}",
                user_id=user_id,
                error=str(error),
                fallback_mode=self.fallback_mode,
            )
        return DiaryFetchResult(
            user_id=user_id,
            window=window,
            entries=entries,
            total_count=len(entries),
            degraded=True,
        )

    async def fetch_batch(
        self,
        user_ids: list[str],
        window: TimeWindow,
        pause_seconds: float = 0.1,
    ) -> list[DiaryFetchResult]:
        """Fetch several users sequentially; one user's failure yields an empty result."""
        results: list[DiaryFetchResult] = []
        for user_id in user_ids:
            try:
                results.append(await self.fetch_entries_in_window(user_id, window))
            except Exception as e:
                logger.error(f"Failed to fetch diary entries for user {user_id}: {e}", exc_info=True)
                results.append(DiaryFetchResult(user_id=user_id, window=window))
            # Ease database load on large batches
            if len(user_ids) > 10:
                await asyncio.sleep(pause_seconds)

        total = sum(r.total_count for r in results)
        with_entries = sum(1 for r in results if r.total_count > 0)
        logger.info(
            f"Batch diary fetch completed: {total} entries from {with_entries}/{len(user_ids)} users"
        )
        return results

    async def window_stats(self, user_id: str, window: TimeWindow) -> dict:
        """Entry count, length and mood distribution for a user's window."""
        result = await self.fetch_entries_in_window(user_id, window)
        total_characters = sum(len(e.content) for e in result.entries)
        count = len(result.entries)
        return {
            "total_entries": count,
            "total_characters": total_characters,
            "average_length": round(total_characters / count) if count else 0,
            "mood_distribution": dict(Counter(e.mood.value for e in result.entries)),
            "window_start": window.start.astimezone(UTC).isoformat(),
            "window_end": window.end.astimezone(UTC).isoformat(),
        }
