from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Callable

import pytest

from diary_feedback.core.errors import StoreUnavailableError
from diary_feedback.diary.time_window import TimeWindow, resolve_window
from diary_feedback.llm.base import BaseLLMProvider
from diary_feedback.llm.models import Completion
from diary_feedback.models.schemas import ActiveUser, DiaryEntry, Mood, Persona

GOOD_FEEDBACK = "今日も一日お疲れさまでした。カフェでの時間、とても素敵ですね。明日も応援しています！"

# 2025-01-08 05:00 JST
REFERENCE_INSTANT = datetime(2025, 1, 7, 20, 0, tzinfo=UTC)


class FakeProvider(BaseLLMProvider):
    """Provider driven by a handler: return text or raise."""

    def __init__(self, handler: Callable[[str], Any] | None = None, model: str = "fake-model"):
        super().__init__(model=model, api_key="test-key")
        self.handler = handler or (lambda prompt: GOOD_FEEDBACK)
        self.prompts: list[str] = []
        self.closed = False

    async def complete(self, system_prompt, max_tokens, temperature, model=None):
        self.prompts.append(system_prompt)
        outcome = self.handler(system_prompt)
        if isinstance(outcome, BaseException):
            raise outcome
        return Completion(
            text=outcome,
            model_used=model or self.model,
            provider="fake",
            tokens_used=42,
        )

    def get_cost_estimate(self, input_tokens, output_tokens):
        return 0.0

    async def close(self):
        self.closed = True


class ScriptedProvider(FakeProvider):
    """Returns (or raises) each scripted outcome in turn."""

    def __init__(self, outcomes: list):
        self.outcomes = list(outcomes)
        super().__init__(handler=lambda prompt: self.outcomes.pop(0))


class FakeConnection:
    """asyncpg connection stand-in returning scripted results in call order."""

    def __init__(self, fetchrow=(), fetch=(), fetchval=()):
        self.fetchrow_results = list(fetchrow)
        self.fetch_results = list(fetch)
        self.fetchval_results = list(fetchval)
        self.calls: list[tuple[str, str, tuple]] = []

    @staticmethod
    def _next(results: list):
        result = results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def fetchrow(self, sql, *args):
        self.calls.append(("fetchrow", sql, args))
        return self._next(self.fetchrow_results)

    async def fetch(self, sql, *args):
        self.calls.append(("fetch", sql, args))
        return self._next(self.fetch_results)

    async def fetchval(self, sql, *args):
        self.calls.append(("fetchval", sql, args))
        return self._next(self.fetchval_results)

    async def execute(self, sql, *args):
        self.calls.append(("execute", sql, args))
        return "UPDATE 1"

    @asynccontextmanager
    async def transaction(self):
        yield


class FeedbackTable:
    """In-memory feedbacks table speaking the SQL FeedbackStorage sends."""

    def __init__(self):
        self.rows: list[dict] = []
        self.hide_from_precheck = False
        self.fail_inserts: Exception | None = None

    def _find(self, user_id, character_id, feedback_date):
        for row in self.rows:
            if (row["user_id"], row["character_id"], row["feedback_date"]) == (
                user_id,
                character_id,
                feedback_date,
            ):
                return row
        return None

    async def fetchval(self, sql, *args):
        if "INSERT INTO feedbacks" in sql:
            if self.fail_inserts:
                raise self.fail_inserts
            user_id, character_id, diary_entry_id, content, feedback_date, metadata = args
            if self._find(user_id, character_id, feedback_date):
                return None
            row = {
                "id": len(self.rows) + 1,
                "user_id": user_id,
                "character_id": character_id,
                "diary_entry_id": diary_entry_id,
                "content": content,
                "feedback_date": feedback_date,
                "is_favorited": False,
                "generation_metadata": metadata,
                "created_at": datetime.now(UTC),
            }
            self.rows.append(row)
            return row["id"]
        if "SELECT id FROM feedbacks" in sql:
            if self.hide_from_precheck:
                return None
            row = self._find(*args)
            return row["id"] if row else None
        raise AssertionError(f"Unexpected fetchval: {sql}")

    async def fetch(self, sql, *args):
        if "feedback_date = $2" in sql:
            user_id, feedback_date = args
            return [r for r in self.rows if r["user_id"] == user_id and r["feedback_date"] == feedback_date]
        if "LIMIT $3" in sql:
            user_id, character_id, limit = args
            rows = [r for r in self.rows if r["user_id"] == user_id and r["character_id"] == character_id]
            # Rows are appended in creation order
            return list(reversed(rows))[:limit]
        raise AssertionError(f"Unexpected fetch: {sql}")


class FakePool:
    """asyncpg pool stand-in handing out one connection, or failing to connect."""

    def __init__(self, conn=None, error: BaseException | None = None):
        self.conn = conn
        self.error = error

    @asynccontextmanager
    async def acquire(self):
        if self.error is not None:
            raise self.error
        yield self.conn


class FakeDiaryStore:
    """Diary store over a list of entries, or unavailable."""

    def __init__(self, entries: list[DiaryEntry] | None = None, unavailable: bool = False):
        self.entries = entries or []
        self.unavailable = unavailable
        self.queries: list[tuple[str, datetime, datetime]] = []

    async def query(self, user_id, start, end):
        self.queries.append((user_id, start, end))
        if self.unavailable:
            raise StoreUnavailableError("diary store", "connection refused")
        return sorted(
            (e for e in self.entries if e.user_id == user_id and start <= e.created_at < end),
            key=lambda e: e.created_at,
        )


class FakeUserDirectory:
    def __init__(self, user_ids: list[str] | None = None, unavailable: bool = False):
        self.user_ids = user_ids or []
        self.unavailable = unavailable

    async def list_active_users(self, lookback_days: int = 14):
        if self.unavailable:
            raise StoreUnavailableError("user directory", "connection refused")
        return [ActiveUser(id=user_id) for user_id in self.user_ids]


async def no_sleep(seconds: float) -> None:
    return None


def make_entry(
    entry_id: int = 1,
    user_id: str = "user-1",
    created_at: datetime | None = None,
    content: str = "友達とカフェで新しいプロジェクトの話をした。とても楽しかった。",
    mood: Mood = Mood.HAPPY,
) -> DiaryEntry:
    return DiaryEntry(
        id=entry_id,
        user_id=user_id,
        content=content,
        mood=mood,
        created_at=created_at or datetime(2025, 1, 7, 10, 0, tzinfo=UTC),
    )


def make_persona(persona_id: str = "1", name: str = "鈴木 ハジメ", role: str = "ライフコーチ") -> Persona:
    return Persona(
        id=persona_id,
        name=name,
        role=role,
        personality="前向きで励ましが得意。",
        speech_style="です・ます調で丁寧。",
    )


@pytest.fixture
def personas() -> list[Persona]:
    return [
        make_persona("1", "鈴木 ハジメ", "ライフコーチ"),
        make_persona("2", "星野 推子", "推し活女子"),
        make_persona("3", "ミーコ", "猫"),
    ]


@pytest.fixture
def window() -> TimeWindow:
    # 2025-01-07 04:00 JST to 2025-01-08 04:00 JST
    return resolve_window(REFERENCE_INSTANT)
