"""In-process queue used when the persistent queue store is unavailable."""

import uuid
from datetime import UTC, datetime, timedelta

from diary_feedback.core.errors import DuplicateEnqueueError
from diary_feedback.core.logging import get_logger
from diary_feedback.models.queue import QueueItem, QueueStats, QueueStatus

logger = get_logger(__name__)


class InMemoryQueue:
    """Same contract as QueueStore, held in a dict for the life of one run."""

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries
        self._items: dict[str, QueueItem] = {}

    async def enqueue(
        self,
        user_id: str,
        priority: int = 0,
        metadata: dict | None = None,
    ) -> QueueItem:
        for item in self._items.values():
            if item.user_id == user_id and item.is_active:
                raise DuplicateEnqueueError(user_id, item.status.value)

        item = QueueItem(
            id=str(uuid.uuid4()),
            user_id=user_id,
            priority=priority,
            max_retries=self.max_retries,
            created_at=datetime.now(UTC),
            metadata={"enqueued_at": datetime.now(UTC).isoformat(), **(metadata or {})},
        )
        self._items[item.id] = item
        return item

    async def dequeue_next(self) -> QueueItem | None:
        pending = [i for i in self._items.values() if i.status == QueueStatus.PENDING]
        if not pending:
            return None
        # Insertion order breaks created_at ties
        item = min(pending, key=lambda i: (-i.priority, i.created_at))
        item.status = QueueStatus.PROCESSING
        item.started_at = datetime.now(UTC)
        return item.model_copy()

    async def mark_completed(self, item_id: str) -> None:
        item = self._items.get(item_id)
        if item is None:
            return
        item.status = QueueStatus.COMPLETED
        item.completed_at = item.completed_at or datetime.now(UTC)
        item.error_message = None

    async def mark_failed(self, item_id: str, error_message: str) -> bool:
        item = self._items.get(item_id)
        if item is None:
            logger.warning("mark_failed on unknown queue item", queue_item_id=item_id)
            return False

        item.retry_count += 1
        item.error_message = error_message
        if item.retry_count <= item.max_retries:
            item.status = QueueStatus.PENDING
            item.started_at = None
            return True

        item.status = QueueStatus.FAILED
        item.completed_at = datetime.now(UTC)
        return False

    async def stats(self) -> QueueStats:
        counts = {status: 0 for status in QueueStatus}
        for item in self._items.values():
            counts[item.status] += 1
        return QueueStats(
            pending=counts[QueueStatus.PENDING],
            processing=counts[QueueStatus.PROCESSING],
            completed=counts[QueueStatus.COMPLETED],
            failed=counts[QueueStatus.FAILED],
            total=len(self._items),
        )

    async def reclaim_stale(self, older_than: timedelta) -> int:
        cutoff = datetime.now(UTC) - older_than
        reclaimed = 0
        for item in self._items.values():
            if item.status == QueueStatus.PROCESSING and item.started_at and item.started_at < cutoff:
                item.status = QueueStatus.PENDING
                item.started_at = None
                reclaimed += 1
        return reclaimed
