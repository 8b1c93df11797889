"""Persistent feedback generation queue backed by PostgreSQL."""

import json
from datetime import UTC, datetime, timedelta

import asyncpg
from asyncpg import Pool

from diary_feedback.core.errors import DuplicateEnqueueError, StoreUnavailableError
from diary_feedback.core.logging import get_logger
from diary_feedback.db.connection import CONNECTION_ERRORS
from diary_feedback.models.queue import QueueItem, QueueStats, QueueStatus

logger = get_logger(__name__)

QUEUE_TABLE = "feedback_generation_queue"


class QueueStore:
    """
    Durable queue of users awaiting feedback generation.

    Every method maps connection-level failures to StoreUnavailableError so
    the scheduler can switch to an in-memory queue.
    """

    def __init__(self, pool: Pool, max_retries: int = 3):
        self.pool = pool
        self.max_retries = max_retries

    async def enqueue(
        self,
        user_id: str,
        priority: int = 0,
        metadata: dict | None = None,
    ) -> QueueItem:
        """
        Add a pending item for ``user_id``.

        Raises:
            DuplicateEnqueueError: If the user already has a pending or processing item
            StoreUnavailableError: If the queue store cannot be reached
        """
        metadata = {"enqueued_at": datetime.now(UTC).isoformat(), **(metadata or {})}
        try:
            async with self.pool.acquire() as conn:
                existing = await conn.fetchrow(
                    f"""
                    SELECT id, status FROM {QUEUE_TABLE}
                    WHERE user_id = $1 AND status IN ('pending', 'processing')
                    LIMIT 1
                    """,
                    user_id,
                )
                if existing is not None:
                    raise DuplicateEnqueueError(user_id, existing["status"])

                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {QUEUE_TABLE} (user_id, status, priority, max_retries, metadata)
                    VALUES ($1, 'pending', $2, $3, $4::jsonb)
                    RETURNING *
                    """,
                    user_id,
                    priority,
                    self.max_retries,
                    json.dumps(metadata),
                )
        except asyncpg.exceptions.UniqueViolationError as e:
            # Lost the race against a concurrent enqueue; the partial index caught it
            raise DuplicateEnqueueError(user_id) from e
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError("queue store", str(e)) from e

        item = QueueItem.model_validate(dict(row))
        logger.info(f"Enqueued user {user_id}", queue_item_id=item.id, priority=priority)
        return item

    async def dequeue_next(self) -> QueueItem | None:
        """
        Claim the highest-priority, oldest pending item.

        Returns None when nothing is pending or another worker claimed the
        candidate first.
        """
        try:
            async with self.pool.acquire() as conn:
                candidate = await conn.fetchrow(
                    f"""
                    SELECT id FROM {QUEUE_TABLE}
                    WHERE status = 'pending'
                    ORDER BY priority DESC, created_at ASC
                    LIMIT 1
                    """
                )
                if candidate is None:
                    return None

                row = await conn.fetchrow(
                    f"""
                    UPDATE {QUEUE_TABLE}
                    SET status = 'processing', started_at = NOW()
                    WHERE id = $1 AND status = 'pending'
                    RETURNING *
                    """,
                    candidate["id"],
                )
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError("queue store", str(e)) from e

        if row is None:
            logger.info("Queue item claimed by another worker", queue_item_id=str(candidate["id"]))
            return None
        return QueueItem.model_validate(dict(row))

    async def mark_completed(self, item_id: str) -> None:
        """Mark an item completed. Safe to call more than once."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    f"""
                    UPDATE {QUEUE_TABLE}
                    SET status = 'completed',
                        completed_at = COALESCE(completed_at, NOW()),
                        error_message = NULL
                    WHERE id = $1
                    """,
                    item_id,
                )
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError("queue store", str(e)) from e
        logger.debug("Queue item completed", queue_item_id=item_id)

    async def mark_failed(self, item_id: str, error_message: str) -> bool:
        """
        Record a failure and decide whether the item gets another attempt.

        Returns:
            True if the item went back to pending, False if it is now terminally failed
        """
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"SELECT retry_count, max_retries FROM {QUEUE_TABLE} WHERE id = $1 FOR UPDATE",
                        item_id,
                    )
                    if row is None:
                        logger.warning("mark_failed on unknown queue item", queue_item_id=item_id)
                        return False

                    retry_count = row["retry_count"] + 1
                    will_retry = retry_count <= row["max_retries"]
                    if will_retry:
                        await conn.execute(
                            f"""
                            UPDATE {QUEUE_TABLE}
                            SET status = 'pending', retry_count = $2,
                                error_message = $3, started_at = NULL
                            WHERE id = $1
                            """,
                            item_id,
                            retry_count,
                            error_message,
                        )
                    else:
                        await conn.execute(
                            f"""
                            UPDATE {QUEUE_TABLE}
                            SET status = 'failed', retry_count = $2,
                                error_message = $3, completed_at = NOW()
                            WHERE id = $1
                            """,
                            item_id,
                            retry_count,
                            error_message,
                        )
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError("queue store", str(e)) from e

        logger.info(
            "Queue item failed, will retry" if will_retry else "Queue item failed permanently",
            queue_item_id=item_id,
            retry_count=retry_count,
            error=error_message,
        )
        return will_retry

    async def stats(self) -> QueueStats:
        """Counts of items per status."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"SELECT status, COUNT(*) AS count FROM {QUEUE_TABLE} GROUP BY status"
                )
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError("queue store", str(e)) from e

        counts = {row["status"]: row["count"] for row in rows}
        return QueueStats(
            pending=counts.get(QueueStatus.PENDING.value, 0),
            processing=counts.get(QueueStatus.PROCESSING.value, 0),
            completed=counts.get(QueueStatus.COMPLETED.value, 0),
            failed=counts.get(QueueStatus.FAILED.value, 0),
            total=sum(counts.values()),
        )

    async def reclaim_stale(self, older_than: timedelta) -> int:
        """
        Return processing items whose run died to pending.

        Returns:
            Number of items reclaimed
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    UPDATE {QUEUE_TABLE}
                    SET status = 'pending', started_at = NULL
                    WHERE status = 'processing' AND started_at < $1
                    RETURNING id
                    """,
                    datetime.now(UTC) - older_than,
                )
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError("queue store", str(e)) from e

        if rows:
            logger.info(f"Reclaimed {len(rows)} stale processing items")
        return len(rows)
