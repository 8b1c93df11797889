"""Nightly batch scheduler: enumerate users, enqueue, drain, report."""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Protocol

from asyncpg import Pool
from pydantic import BaseModel

from diary_feedback.core.config import Settings, get_settings
from diary_feedback.core.errors import (
    DuplicateEnqueueError,
    PermanentUserFailureError,
    QueueWriteError,
    StoreUnavailableError,
)
from diary_feedback.core.logging import get_logger
from diary_feedback.diary.fetcher import DiaryFetcher, DiaryStore
from diary_feedback.diary.time_window import resolve_window, validate_window
from diary_feedback.diary.users import UserDirectory, placeholder_users
from diary_feedback.feedback.generator import FeedbackGenerator
from diary_feedback.feedback.personas import load_personas
from diary_feedback.feedback.storage import FeedbackStorage
from diary_feedback.llm.base import BaseLLMProvider
from diary_feedback.models.queue import QueueItem, QueueStats
from diary_feedback.models.schemas import (
    ActiveUser,
    DiaryEntry,
    Persona,
    PersonaFailure,
    RunMode,
    RunResult,
    SaveStatus,
    UserResult,
)
from diary_feedback.queue.memory import InMemoryQueue
from diary_feedback.queue.store import QueueStore

logger = get_logger(__name__)

RUN_STOPPED_MESSAGE = "Run stopped before the user finished"


class RunPhase(str, Enum):
    ENUMERATING = "enumerating"
    ENQUEUING = "enqueuing"
    DRAINING = "draining"
    REPORTING = "reporting"
    DONE = "done"


class FeedbackQueue(Protocol):
    async def enqueue(self, user_id: str, priority: int = 0, metadata: dict | None = None) -> QueueItem: ...

    async def dequeue_next(self) -> QueueItem | None: ...

    async def mark_completed(self, item_id: str) -> None: ...

    async def mark_failed(self, item_id: str, error_message: str) -> bool: ...

    async def stats(self) -> QueueStats: ...

    async def reclaim_stale(self, older_than: timedelta) -> int: ...


class SchedulerConfig(BaseModel):
    """Knobs for one scheduler run."""

    fallback_mode: str = "empty"
    lookback_days: int = 14
    persona_pause_seconds: float = 0.3
    window_offset_hours: int = 9
    window_anchor_hour: int = 4
    queue_max_retries: int = 3
    default_priority: int = 0
    stale_after: timedelta = timedelta(minutes=60)
    contention_retries: int = 3

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            fallback_mode=settings.effective_fallback_mode,
            lookback_days=settings.active_user_lookback_days,
            persona_pause_seconds=settings.persona_pause_ms / 1000,
            window_offset_hours=settings.window_utc_offset_hours,
            window_anchor_hour=settings.window_anchor_hour,
            queue_max_retries=settings.queue_max_retries,
            default_priority=settings.queue_default_priority,
            stale_after=timedelta(minutes=settings.queue_stale_after_minutes),
            contention_retries=settings.dequeue_contention_retries,
        )


class BatchScheduler:
    """
    Drives one nightly run over a single sequential worker.

    Collaborators are injected; the scheduler never builds clients itself.
    Failures are contained per persona call and per user and end up in the
    RunResult. Only failing to enumerate users at all (in ``empty`` fallback
    mode) ends the run early, and even then a report is returned.
    """

    def __init__(
        self,
        queue: FeedbackQueue,
        users: UserDirectory,
        fetcher: DiaryFetcher,
        generator: FeedbackGenerator,
        storage: FeedbackStorage | None,
        personas: list[Persona],
        config: SchedulerConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ):
        self.queue = queue
        self.users = users
        self.fetcher = fetcher
        self.generator = generator
        self.storage = storage
        self.personas = [p for p in personas if p.is_active]
        self.config = config or SchedulerConfig()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))

        self.phase = RunPhase.ENUMERATING
        self.mode = RunMode.PERSISTENT
        self._stop_requested = False
        self._notes: list[str] = []

    def request_stop(self) -> None:
        """Ask the run to halt after the in-flight persona call."""
        logger.info("Stop requested, finishing the current persona call")
        self._stop_requested = True

    def _enter(self, phase: RunPhase) -> None:
        self.phase = phase
        logger.info(f"Batch phase: {phase.value}", phase=phase.value, mode=self.mode.value)

    def _note(self, message: str) -> None:
        self._notes.append(message)

    async def run(self, reference_instant: datetime | None = None) -> RunResult:
        """
        Execute one full run.

        Args:
            reference_instant: Instant every window is resolved against;
                defaults to the current time for each user

        Returns:
            RunResult describing the whole run
        """
        started = time.monotonic()
        started_at = self._clock()
        self._notes = []
        results: list[UserResult] = []

        run_window = resolve_window(
            reference_instant or started_at,
            self.config.window_offset_hours,
            self.config.window_anchor_hour,
        )
        for issue in validate_window(run_window, now=started_at):
            logger.warning(f"Time window check: {issue}")
            self._note(f"window: {issue}")

        logger.info(
            "Starting daily feedback batch",
            window_start=run_window.start.isoformat(),
            window_end=run_window.end.isoformat(),
            personas=len(self.personas),
        )

        def report(success: bool, error: str | None = None) -> RunResult:
            return RunResult(
                success=success,
                processed=sum(1 for r in results if r.success),
                failed=sum(1 for r in results if not r.success),
                results=results,
                queue_stats=stats,
                duration_ms=(time.monotonic() - started) * 1000,
                mode=self.mode,
                started_at=started_at,
                window_start=run_window.start,
                window_end=run_window.end,
                notes=list(self._notes),
                stopped_early=self._stop_requested,
                error=error,
            )

        # Enumerating
        self._enter(RunPhase.ENUMERATING)
        stats = QueueStats()
        try:
            active_users = await self._enumerate_users()
        except StoreUnavailableError as e:
            logger.error(f"Cannot determine active users, aborting run: {e}")
            self._enter(RunPhase.DONE)
            return report(False, str(e))

        try:
            # Enqueuing
            self._enter(RunPhase.ENQUEUING)
            await self._enqueue_all(active_users)

            # Draining
            self._enter(RunPhase.DRAINING)
            await self._drain(active_users, results, reference_instant)

            # Reporting
            self._enter(RunPhase.REPORTING)
            try:
                stats = await self.queue.stats()
            except StoreUnavailableError as e:
                logger.error(f"Could not read final queue stats: {e}")
                self._note(f"queue stats unavailable: {e}")
        except Exception as e:
            logger.error(f"Batch aborted during {self.phase.value}: {e}", exc_info=True)
            error = f"batch aborted during {self.phase.value}: {e}"
            self._enter(RunPhase.DONE)
            return report(False, error)

        result = report(True)
        self._enter(RunPhase.DONE)
        logger.info(
            "Daily feedback batch finished",
            processed=result.processed,
            failed=result.failed,
            mode=result.mode.value,
            duration_ms=round(result.duration_ms),
            stopped_early=result.stopped_early,
        )
        return result

    async def _enumerate_users(self) -> list[ActiveUser]:
        try:
            return await self.users.list_active_users(self.config.lookback_days)
        except StoreUnavailableError as e:
            if self.config.fallback_mode != "sample":
                raise
            logger.warning(f"User directory unavailable, using placeholder user: {e}")
            self._note(f"user directory unavailable, placeholder user list used: {e}")
            return placeholder_users()

    async def _enqueue_all(self, users: list[ActiveUser]) -> None:
        enqueued = 0
        for user in users:
            try:
                await self.queue.enqueue(
                    user.id,
                    priority=self.config.default_priority,
                    metadata={"source": "daily_batch"},
                )
                enqueued += 1
            except DuplicateEnqueueError:
                logger.info(f"User {user.id} already queued, skipping", user_id=user.id)
            except StoreUnavailableError as e:
                await self._switch_to_memory(users, f"queue store unavailable while enqueuing: {e}")
                return
        logger.info(f"Enqueued {enqueued}/{len(users)} users")

    async def _switch_to_memory(self, users: list[ActiveUser], reason: str) -> None:
        logger.error(f"Falling back to in-memory queue: {reason}")
        self._note(f"in-memory mode: {reason}")
        self.mode = RunMode.IN_MEMORY
        queue = InMemoryQueue(max_retries=self.config.queue_max_retries)
        for user in users:
            try:
                await queue.enqueue(user.id, priority=self.config.default_priority)
            except DuplicateEnqueueError:
                continue
        self.queue = queue

    async def _drain(
        self,
        active_users: list[ActiveUser],
        results: list[UserResult],
        reference_instant: datetime | None,
    ) -> None:
        try:
            await self.queue.reclaim_stale(self.config.stale_after)
        except StoreUnavailableError as e:
            await self._switch_to_memory(active_users, f"queue store unavailable while draining: {e}")

        contention_left = self.config.contention_retries
        while not self._stop_requested:
            try:
                item = await self.queue.dequeue_next()
                if item is None:
                    if contention_left > 0 and (await self.queue.stats()).pending > 0:
                        # Lost a claim race; pending work remains
                        contention_left -= 1
                        continue
                    break
                user_result = await self._process_item(item, reference_instant)
            except QueueWriteError as e:
                # The user finished; only recording it failed
                results.append(e.result)
                finished = {r.user_id for r in results}
                remaining = [u for u in active_users if u.id not in finished]
                await self._switch_to_memory(remaining, f"queue store unavailable while draining: {e}")
                continue
            except StoreUnavailableError as e:
                finished = {r.user_id for r in results}
                remaining = [u for u in active_users if u.id not in finished]
                await self._switch_to_memory(remaining, f"queue store unavailable while draining: {e}")
                continue

            if user_result is not None:
                results.append(user_result)

        if self._stop_requested:
            self._note(f"stopped early after {len(results)} users")

    async def _process_item(self, item: QueueItem, reference_instant: datetime | None) -> UserResult | None:
        """
        Process one claimed item to completion.

        Returns:
            Final UserResult, or None when the item was sent back for another attempt
        """
        attempts = item.retry_count + 1
        logger.info(
            f"Processing user {item.user_id} (attempt {attempts})",
            user_id=item.user_id,
            queue_item_id=item.id,
        )
        try:
            outcome = await self._generate_for_user(item, reference_instant)
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.error(f"Error processing user {item.user_id}: {e}", user_id=item.user_id, exc_info=True)
            return await self._fail(item, str(e))

        if outcome.interrupted:
            # Left in processing; a later run reclaims it
            logger.warning(f"User {item.user_id} interrupted by stop request", queue_item_id=item.id)
            self._note(f"user {item.user_id} interrupted by stop request")
            return None

        if outcome.success:
            try:
                await self.queue.mark_completed(item.id)
            except StoreUnavailableError as e:
                raise QueueWriteError(outcome, e) from e
            return outcome

        failure = await self._fail(item, outcome.error or "All persona generations failed")
        if failure is not None:
            failure.persona_failures = outcome.persona_failures
            failure.entries_found = outcome.entries_found
        return failure

    async def _fail(self, item: QueueItem, message: str) -> UserResult | None:
        will_retry = await self.queue.mark_failed(item.id, message)
        if will_retry:
            logger.info(f"User {item.user_id} will be retried", user_id=item.user_id)
            return None

        attempts = item.retry_count + 1
        error = PermanentUserFailureError(item.user_id, attempts, message)
        logger.error(str(error), user_id=item.user_id)
        return UserResult(user_id=item.user_id, success=False, attempts=attempts, error=str(error))

    async def _generate_for_user(self, item: QueueItem, reference_instant: datetime | None) -> UserResult:
        user_id = item.user_id
        window = resolve_window(
            reference_instant or self._clock(),
            self.config.window_offset_hours,
            self.config.window_anchor_hour,
        )
        fetched = await self.fetcher.fetch_entries_in_window(user_id, window)
        result = UserResult(
            user_id=user_id,
            success=True,
            entries_found=fetched.total_count,
            attempts=item.retry_count + 1,
            sample_data=any(e.is_sample for e in fetched.entries),
        )
        if fetched.degraded:
            self._note(f"diary store unavailable for user {user_id} ({self.fetcher.fallback_mode} fallback)")
        if not fetched.entries:
            logger.info(f"No diary entries for user {user_id}, nothing to generate", user_id=user_id)
            return result

        calls = 0
        for entry in fetched.entries:
            for persona in self.personas:
                if self._stop_requested:
                    result.success = False
                    result.interrupted = True
                    result.error = RUN_STOPPED_MESSAGE
                    return result
                if calls:
                    await self._sleep(self.config.persona_pause_seconds)
                calls += 1
                await self._generate_one(result, persona, entry)

        if result.feedback_count == 0 and result.duplicates_skipped == 0:
            result.success = False
            result.error = f"All {calls} persona generations failed"
        logger.info(
            f"Finished user {user_id}",
            user_id=user_id,
            feedback_count=result.feedback_count,
            duplicates_skipped=result.duplicates_skipped,
            persona_failures=len(result.persona_failures),
        )
        return result

    async def _generate_one(self, result: UserResult, persona: Persona, entry: DiaryEntry) -> None:
        previous = await self._previous_feedbacks(result.user_id, persona, entry)
        generation = await self.generator.generate(persona, entry, previous_feedbacks=previous)
        if not generation.success or generation.feedback is None:
            error = generation.error
            result.persona_failures.append(
                PersonaFailure(
                    persona_id=persona.id,
                    persona_name=persona.name,
                    diary_entry_id=entry.id,
                    error_kind=error.kind.value if error else "unknown",
                    message=error.message if error else "Unknown error",
                )
            )
            return

        if entry.is_sample or self.storage is None:
            # Sample content never reaches the feedback store
            result.feedback_count += 1
            return

        outcome = await self.storage.save(generation.feedback, result.user_id, entry.created_at, entry.id)
        if outcome.status == SaveStatus.SAVED:
            result.feedback_count += 1
        elif outcome.status == SaveStatus.DUPLICATE:
            result.duplicates_skipped += 1
        else:
            result.persona_failures.append(
                PersonaFailure(
                    persona_id=persona.id,
                    persona_name=persona.name,
                    diary_entry_id=entry.id,
                    error_kind="storage_error",
                    message=outcome.error or "Unknown error",
                )
            )

    async def _previous_feedbacks(self, user_id: str, persona: Persona, entry: DiaryEntry) -> list[str] | None:
        if entry.is_sample or self.storage is None:
            return None
        try:
            return await self.storage.recent_contents(user_id, persona.id)
        except Exception as e:
            logger.warning(f"Could not load previous feedback for {persona.name}: {e}", user_id=user_id)
            return None


async def build_scheduler(
    pool: Pool,
    provider: BaseLLMProvider,
    settings: Settings | None = None,
    personas: list[Persona] | None = None,
) -> BatchScheduler:
    """Wire a BatchScheduler to the database-backed collaborators."""
    settings = settings or get_settings()
    config = SchedulerConfig.from_settings(settings)

    return BatchScheduler(
        queue=QueueStore(pool, max_retries=config.queue_max_retries),
        users=UserDirectory(pool),
        fetcher=DiaryFetcher(DiaryStore(pool), fallback_mode=config.fallback_mode),
        generator=FeedbackGenerator(
            provider,
            settings.get_generation_options(),
            offset_hours=config.window_offset_hours,
        ),
        storage=FeedbackStorage(pool),
        personas=personas if personas is not None else await load_personas(pool),
        config=config,
    )


async def run_daily_batch(
    reference_instant: datetime | None = None,
    *,
    pool: Pool,
    provider: BaseLLMProvider,
    settings: Settings | None = None,
    personas: list[Persona] | None = None,
) -> RunResult:
    """
    Run the nightly feedback batch once.

    The caller owns ``pool`` and ``provider`` and closes them afterwards.
    """
    scheduler = await build_scheduler(pool, provider, settings, personas)
    return await scheduler.run(reference_instant)
