#!/usr/bin/env python3
"""Manual enqueue script - put one user on the feedback generation queue."""

import asyncio
import sys
import traceback

from diary_feedback.core.config import get_settings
from diary_feedback.core.errors import DuplicateEnqueueError, StoreUnavailableError
from diary_feedback.core.logging import setup_logging
from diary_feedback.db.connection import close_db_pool, create_db_pool
from diary_feedback.queue.store import QueueStore

setup_logging()


async def enqueue_user(user_id: str, priority: int) -> bool:
    """Manually enqueue a user for the next batch run."""
    print(f"\n{'='*60}")
    print(f"Manual enqueue: user {user_id} (priority {priority})")
    print(f"{'='*60}\n")

    settings = get_settings()
    pool = None
    try:
        print("Step 1: Connecting to database...")
        pool = await create_db_pool(settings, max_retries=1)
        print("  Connected")

        print("\nStep 2: Enqueueing user...")
        store = QueueStore(pool, max_retries=settings.queue_max_retries)
        item = await store.enqueue(
            user_id,
            priority=priority,
            metadata={"manual_trigger": True, "triggered_by": "manual_script"},
        )
        print(f"  Queue item: {item.id}")

        stats = await store.stats()
        print(f"\nQueue now: {stats.pending} pending, {stats.processing} processing")
        print("The next daily batch run will pick this user up.\n")
        return True

    except DuplicateEnqueueError as e:
        print(f"\n  Already queued: {e}")
        return True
    except StoreUnavailableError as e:
        print(f"\nQueue store unavailable: {e}")
        return False
    except Exception as e:
        print(f"\nFailed to enqueue user: {e}")
        traceback.print_exc()
        return False

    finally:
        await close_db_pool(pool)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts/enqueue_user.py <user_id> [priority]")
        print("Example: python scripts/enqueue_user.py user-123 10")
        sys.exit(1)

    user_id = sys.argv[1]
    priority = 0
    if len(sys.argv) > 2:
        try:
            priority = int(sys.argv[2])
        except ValueError:
            print(f"Invalid priority: {sys.argv[2]}")
            sys.exit(1)

    success = asyncio.run(enqueue_user(user_id, priority))
    sys.exit(0 if success else 1)
