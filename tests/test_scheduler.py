from datetime import UTC, datetime, timedelta

import asyncpg
import pytest

from conftest import (
    GOOD_FEEDBACK,
    REFERENCE_INSTANT,
    FakeDiaryStore,
    FakePool,
    FakeProvider,
    FakeUserDirectory,
    FeedbackTable,
    make_entry,
    no_sleep,
)
from diary_feedback.core.errors import StoreUnavailableError
from diary_feedback.diary.fetcher import DiaryFetcher
from diary_feedback.feedback.generator import FeedbackGenerator, GenerationOptions, RetryConfig
from diary_feedback.feedback.storage import FeedbackStorage
from diary_feedback.llm.errors import APIError
from diary_feedback.models.schemas import RunMode
from diary_feedback.queue.memory import InMemoryQueue
from diary_feedback.queue.scheduler import BatchScheduler, RunPhase, SchedulerConfig
from diary_feedback.queue.store import QueueStore


class UnavailableQueue(InMemoryQueue):
    """A persistent queue whose backing store is down."""

    async def enqueue(self, user_id, priority=0, metadata=None):
        raise StoreUnavailableError("queue store", "connection refused")


class CompletionWriteFailsQueue(InMemoryQueue):
    """Loses its backing store right after a user finishes."""

    async def mark_completed(self, item_id):
        raise StoreUnavailableError("queue store", "connection reset")


class DequeueFailsAfterFirstQueue(InMemoryQueue):
    """Serves one item, then loses its backing store."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.served = 0

    async def dequeue_next(self):
        if self.served:
            raise StoreUnavailableError("queue store", "connection reset")
        self.served += 1
        return await super().dequeue_next()


class ContendedQueue(InMemoryQueue):
    """Loses the first claim race to another worker."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.lost_races = 0

    async def dequeue_next(self):
        if self.lost_races == 0:
            self.lost_races += 1
            return None
        return await super().dequeue_next()


def build_scheduler(
    personas,
    entries=None,
    user_ids=("user-1",),
    provider=None,
    queue=None,
    table=None,
    diary_unavailable=False,
    users_unavailable=False,
    **config,
):
    config.setdefault("fallback_mode", "empty")
    generator = FeedbackGenerator(
        provider or FakeProvider(),
        GenerationOptions(retry=RetryConfig(max_retries=1, base_delay_ms=0)),
        sleep=no_sleep,
    )
    return BatchScheduler(
        queue=queue or InMemoryQueue(),
        users=FakeUserDirectory(list(user_ids), unavailable=users_unavailable),
        fetcher=DiaryFetcher(
            FakeDiaryStore(entries, unavailable=diary_unavailable),
            fallback_mode=config["fallback_mode"],
        ),
        generator=generator,
        storage=FeedbackStorage(FakePool(table if table is not None else FeedbackTable())),
        personas=personas,
        config=SchedulerConfig(**config),
        sleep=no_sleep,
        clock=lambda: REFERENCE_INSTANT,
    )


def two_entries():
    # Both inside the 2025-01-07 04:00 JST window, on different UTC dates
    return [
        make_entry(1, created_at=datetime(2025, 1, 6, 22, 0, tzinfo=UTC)),
        make_entry(2, created_at=datetime(2025, 1, 7, 10, 0, tzinfo=UTC)),
    ]


@pytest.mark.asyncio
async def test_two_entries_three_personas(personas):
    provider = FakeProvider()
    table = FeedbackTable()
    queue = InMemoryQueue()
    scheduler = build_scheduler(personas, two_entries(), provider=provider, queue=queue, table=table)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert result.success
    assert (result.processed, result.failed) == (1, 0)
    assert len(provider.prompts) == 6
    assert len(table.rows) == 6
    user = result.results[0]
    assert user.feedback_count == 6
    assert user.entries_found == 2
    assert result.queue_stats.completed == 1
    assert result.mode == RunMode.PERSISTENT
    assert not result.degraded
    assert result.window_end == datetime(2025, 1, 7, 19, 0, tzinfo=UTC)
    assert scheduler.phase == RunPhase.DONE


@pytest.mark.asyncio
async def test_personas_run_in_roster_order_with_pause(personas):
    pauses = []

    async def record_pause(seconds):
        pauses.append(seconds)

    provider = FakeProvider()
    scheduler = build_scheduler(personas, [make_entry(1)], provider=provider, persona_pause_seconds=0.3)
    scheduler._sleep = record_pause

    await scheduler.run(REFERENCE_INSTANT)

    names = [next(p.name for p in personas if p.name in prompt) for prompt in provider.prompts]
    assert names == [p.name for p in personas]
    assert pauses == [0.3, 0.3]


@pytest.mark.asyncio
async def test_same_day_entries_are_deduplicated(personas):
    table = FeedbackTable()
    entries = [
        make_entry(1, created_at=datetime(2025, 1, 7, 1, 0, tzinfo=UTC)),
        make_entry(2, created_at=datetime(2025, 1, 7, 10, 0, tzinfo=UTC)),
    ]
    scheduler = build_scheduler(personas, entries, table=table)

    result = await scheduler.run(REFERENCE_INSTANT)

    user = result.results[0]
    assert user.success
    assert user.feedback_count == 3
    assert user.duplicates_skipped == 3
    assert len(table.rows) == 3


@pytest.mark.asyncio
async def test_user_without_entries_completes_with_zero_feedback(personas):
    provider = FakeProvider()
    queue = InMemoryQueue()
    scheduler = build_scheduler(personas, [], provider=provider, queue=queue)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert (result.processed, result.failed) == (1, 0)
    assert result.results[0].success
    assert result.results[0].feedback_count == 0
    assert result.queue_stats.completed == 1
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_auth_error_for_one_persona_does_not_abort_user(personas):
    def handler(prompt):
        if "星野 推子" in prompt:
            return APIError("Unauthorized", status_code=401)
        return GOOD_FEEDBACK

    provider = FakeProvider(handler=handler)
    scheduler = build_scheduler(personas, [make_entry(1)], provider=provider)

    result = await scheduler.run(REFERENCE_INSTANT)

    user = result.results[0]
    assert user.success
    assert user.feedback_count == 2
    assert len(provider.prompts) == 3
    assert len(user.persona_failures) == 1
    failure = user.persona_failures[0]
    assert failure.persona_name == "星野 推子"
    assert failure.error_kind == "auth_error"
    assert failure.diary_entry_id == 1


@pytest.mark.asyncio
async def test_user_failing_every_attempt_becomes_permanent_failure(personas):
    provider = FakeProvider(handler=lambda prompt: APIError("Unauthorized", status_code=401))
    queue = InMemoryQueue(max_retries=1)
    scheduler = build_scheduler(personas, [make_entry(1)], provider=provider, queue=queue)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert result.success
    assert (result.processed, result.failed) == (0, 1)
    user = result.results[0]
    assert not user.success
    assert user.attempts == 2
    assert "failed permanently after 2 attempts" in user.error
    assert len(user.persona_failures) == 3
    # Two attempts, three personas each, no per-call retries for auth errors
    assert len(provider.prompts) == 6
    assert result.queue_stats.failed == 1


@pytest.mark.asyncio
async def test_one_failing_user_does_not_stop_others(personas):
    def handler(prompt):
        if "壊れた日記" in prompt:
            return APIError("Invalid request", status_code=400)
        return GOOD_FEEDBACK

    entries = [make_entry(1, user_id="good"), make_entry(2, user_id="bad", content="壊れた日記")]
    scheduler = build_scheduler(
        personas,
        entries,
        user_ids=("bad", "good"),
        provider=FakeProvider(handler=handler),
        queue=InMemoryQueue(max_retries=0),
    )

    result = await scheduler.run(REFERENCE_INSTANT)

    assert (result.processed, result.failed) == (1, 1)
    by_user = {r.user_id: r for r in result.results}
    assert by_user["good"].feedback_count == 3
    assert not by_user["bad"].success


@pytest.mark.asyncio
async def test_unavailable_queue_store_falls_back_to_memory(personas):
    scheduler = build_scheduler(personas, [make_entry(1)], queue=UnavailableQueue())

    result = await scheduler.run(REFERENCE_INSTANT)

    assert result.mode == RunMode.IN_MEMORY
    assert result.degraded
    assert any("in-memory mode" in note for note in result.notes)
    assert (result.processed, result.failed) == (1, 0)
    assert result.results[0].feedback_count == 3
    assert result.queue_stats.completed == 1


@pytest.mark.asyncio
async def test_already_queued_user_is_processed_once(personas):
    queue = InMemoryQueue()
    await queue.enqueue("user-1")
    provider = FakeProvider()
    scheduler = build_scheduler(personas, [make_entry(1)], provider=provider, queue=queue)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert (result.processed, result.failed) == (1, 0)
    assert len(provider.prompts) == 3


@pytest.mark.asyncio
async def test_lost_claim_race_is_retried_while_work_is_pending(personas):
    queue = ContendedQueue()
    scheduler = build_scheduler(personas, [make_entry(1)], queue=queue)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert queue.lost_races == 1
    assert result.processed == 1


@pytest.mark.asyncio
async def test_directory_failure_in_empty_mode_is_fatal(personas):
    provider = FakeProvider()
    scheduler = build_scheduler(personas, [make_entry(1)], provider=provider, users_unavailable=True)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert not result.success
    assert "user directory unavailable" in result.error
    assert result.results == []
    assert provider.prompts == []


@pytest.mark.asyncio
async def test_sample_mode_uses_placeholder_user_and_never_stores_samples(personas):
    table = FeedbackTable()
    scheduler = build_scheduler(
        personas,
        table=table,
        users_unavailable=True,
        diary_unavailable=True,
        fallback_mode="sample",
    )

    result = await scheduler.run(REFERENCE_INSTANT)

    assert result.success
    assert result.degraded
    user = result.results[0]
    assert user.user_id == "sample-user"
    assert user.sample_data
    assert user.feedback_count == user.entries_found * len(personas)
    assert table.rows == []


@pytest.mark.asyncio
async def test_request_stop_halts_after_current_persona_call(personas):
    scheduler = None

    def handler(prompt):
        scheduler.request_stop()
        return GOOD_FEEDBACK

    provider = FakeProvider(handler=handler)
    queue = InMemoryQueue()
    scheduler = build_scheduler(personas, [make_entry(1)], user_ids=("user-1", "user-2"), provider=provider, queue=queue)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert result.stopped_early
    assert len(provider.prompts) == 1
    assert result.results == []
    stats = await queue.stats()
    assert stats.processing == 1
    assert stats.pending == 1


@pytest.mark.asyncio
async def test_stale_window_is_noted(personas):
    scheduler = build_scheduler(personas, [])
    scheduler._clock = lambda: REFERENCE_INSTANT + timedelta(days=10)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert any("more than one week old" in note for note in result.notes)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        asyncpg.exceptions.CannotConnectNowError("the database system is starting up"),
        asyncpg.exceptions.TooManyConnectionsError("sorry, too many clients already"),
    ],
)
async def test_queue_store_server_outage_falls_back_to_memory(personas, error):
    queue = QueueStore(FakePool(error=error))
    scheduler = build_scheduler(personas, [make_entry(1)], queue=queue)

    result = await scheduler.run(REFERENCE_INSTANT)

    assert result.success
    assert result.mode == RunMode.IN_MEMORY
    assert (result.processed, result.failed) == (1, 0)
    assert result.results[0].feedback_count == 3


@pytest.mark.asyncio
async def test_finished_user_is_kept_when_completion_write_fails(personas):
    provider = FakeProvider()
    table = FeedbackTable()
    scheduler = build_scheduler(
        personas, [make_entry(1)], provider=provider, queue=CompletionWriteFailsQueue(), table=table
    )

    result = await scheduler.run(REFERENCE_INSTANT)

    assert result.mode == RunMode.IN_MEMORY
    assert len(provider.prompts) == 3
    assert len(table.rows) == 3
    assert len(result.results) == 1
    user = result.results[0]
    assert user.success
    assert (user.feedback_count, user.duplicates_skipped) == (3, 0)


@pytest.mark.asyncio
async def test_queue_outage_mid_drain_moves_remaining_users_to_memory(personas):
    provider = FakeProvider()
    entries = [make_entry(1, user_id="user-1"), make_entry(2, user_id="user-2")]
    scheduler = build_scheduler(
        personas,
        entries,
        user_ids=("user-1", "user-2"),
        provider=provider,
        queue=DequeueFailsAfterFirstQueue(),
    )

    result = await scheduler.run(REFERENCE_INSTANT)

    assert result.mode == RunMode.IN_MEMORY
    assert any("while draining" in note for note in result.notes)
    assert (result.processed, result.failed) == (2, 0)
    assert sorted(r.user_id for r in result.results) == ["user-1", "user-2"]
    assert len(provider.prompts) == 6


@pytest.mark.asyncio
async def test_unexpected_queue_error_is_reported_not_raised(personas):
    class BrokenQueue(InMemoryQueue):
        async def dequeue_next(self):
            raise RuntimeError("corrupt queue row")

    scheduler = build_scheduler(personas, [make_entry(1)], queue=BrokenQueue())

    result = await scheduler.run(REFERENCE_INSTANT)

    assert not result.success
    assert "draining" in result.error
    assert "corrupt queue row" in result.error
    assert scheduler.phase == RunPhase.DONE


@pytest.mark.asyncio
async def test_stopped_user_is_flagged_interrupted(personas):
    queue = InMemoryQueue()
    scheduler = build_scheduler(personas, [make_entry(1)], queue=queue)
    item = await queue.enqueue("user-1")
    scheduler.request_stop()

    outcome = await scheduler._generate_for_user(item, REFERENCE_INSTANT)

    assert outcome.interrupted
    assert not outcome.success
    assert outcome.feedback_count == 0
