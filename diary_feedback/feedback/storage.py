"""Persistence of generated feedback, deduplicated per (user, persona, day)."""

import json
from datetime import UTC, date, datetime

import asyncpg
from asyncpg import Pool

from diary_feedback.core.errors import DuplicateFeedbackError
from diary_feedback.core.logging import get_logger
from diary_feedback.models.schemas import (
    BatchSaveResult,
    GeneratedFeedback,
    SaveOutcome,
    SaveStatus,
    StoredFeedback,
)

logger = get_logger(__name__)


def feedback_date_for(diary_created_at: datetime) -> date:
    """UTC calendar date of the diary entry; naive datetimes are taken as UTC."""
    if diary_created_at.tzinfo is None:
        return diary_created_at.date()
    return diary_created_at.astimezone(UTC).date()


class FeedbackStorage:
    """Writes GeneratedFeedback rows to the feedbacks table."""

    def __init__(self, pool: Pool):
        self.pool = pool

    async def save(
        self,
        feedback: GeneratedFeedback,
        user_id: str,
        diary_created_at: datetime,
        diary_entry_id: int | None = None,
    ) -> SaveOutcome:
        """
        Persist one feedback unless the (user, persona, date) slot is taken.

        Returns:
            SaveOutcome with status saved, duplicate or failed
        """
        feedback_date = feedback_date_for(diary_created_at)
        try:
            feedback_id = await self._insert(feedback, user_id, feedback_date, diary_entry_id)
        except DuplicateFeedbackError as e:
            logger.info(
                f"Feedback already exists for {feedback.persona_name}, skipping",
                user_id=user_id,
                persona_id=feedback.persona_id,
                feedback_date=feedback_date.isoformat(),
            )
            return SaveOutcome(
                status=SaveStatus.DUPLICATE,
                persona_id=feedback.persona_id,
                persona_name=feedback.persona_name,
                error=str(e),
            )
        except Exception as e:
            logger.error(
                f"Failed to save feedback from {feedback.persona_name}: {e}",
                user_id=user_id,
                persona_id=feedback.persona_id,
                exc_info=True,
            )
            return SaveOutcome(
                status=SaveStatus.FAILED,
                persona_id=feedback.persona_id,
                persona_name=feedback.persona_name,
                error=str(e),
            )

        logger.info(
            f"Saved feedback from {feedback.persona_name}",
            user_id=user_id,
            persona_id=feedback.persona_id,
            feedback_id=feedback_id,
            feedback_date=feedback_date.isoformat(),
        )
        return SaveOutcome(
            status=SaveStatus.SAVED,
            persona_id=feedback.persona_id,
            persona_name=feedback.persona_name,
            feedback_id=feedback_id,
        )

    async def _insert(
        self,
        feedback: GeneratedFeedback,
        user_id: str,
        feedback_date: date,
        diary_entry_id: int | None,
    ) -> str:
        metadata = {
            "model": feedback.model,
            "tokens_used": feedback.tokens_used,
            "prompt_length": len(feedback.prompt_used),
            "generation_time": feedback.generated_at.isoformat(),
        }
        async with self.pool.acquire() as conn:
            existing = await conn.fetchval(
                """
                SELECT id FROM feedbacks
                WHERE user_id = $1 AND character_id = $2 AND feedback_date = $3
                """,
                user_id,
                feedback.persona_id,
                feedback_date,
            )
            if existing is not None:
                raise DuplicateFeedbackError(user_id, feedback.persona_id, feedback_date.isoformat())

            try:
                feedback_id = await conn.fetchval(
                    """
                    INSERT INTO feedbacks (
                        user_id, character_id, diary_entry_id, content,
                        feedback_date, is_favorited, generation_metadata
                    )
                    VALUES ($1, $2, $3, $4, $5, FALSE, $6::jsonb)
                    ON CONFLICT (user_id, character_id, feedback_date) DO NOTHING
                    RETURNING id
                    """,
                    user_id,
                    feedback.persona_id,
                    diary_entry_id,
                    feedback.content,
                    feedback_date,
                    json.dumps(metadata),
                )
            except asyncpg.exceptions.UniqueViolationError as e:
                raise DuplicateFeedbackError(
                    user_id, feedback.persona_id, feedback_date.isoformat()
                ) from e

        # A concurrent writer won the slot between the check and the insert
        if feedback_id is None:
            raise DuplicateFeedbackError(user_id, feedback.persona_id, feedback_date.isoformat())
        return str(feedback_id)

    async def save_many(
        self,
        feedbacks: list[GeneratedFeedback],
        user_id: str,
        diary_created_at: datetime,
        diary_entry_id: int | None = None,
    ) -> BatchSaveResult:
        """Save each feedback independently; one failure never aborts the rest."""
        result = BatchSaveResult()
        for feedback in feedbacks:
            outcome = await self.save(feedback, user_id, diary_created_at, diary_entry_id)
            if outcome.status == SaveStatus.SAVED and outcome.feedback_id:
                result.saved_ids.append(outcome.feedback_id)
            elif outcome.status == SaveStatus.DUPLICATE:
                result.duplicates_skipped += 1
            else:
                result.failed.append(
                    {"persona_name": feedback.persona_name, "error": outcome.error or "Unknown error"}
                )

        logger.info(
            "Batch feedback save completed",
            user_id=user_id,
            saved=len(result.saved_ids),
            failed=len(result.failed),
            duplicates=result.duplicates_skipped,
        )
        return result

    async def existing_for_date(self, user_id: str, feedback_date: date) -> list[StoredFeedback]:
        """Feedback already stored for a user on one day."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, user_id, character_id, content, feedback_date,
                       diary_entry_id, is_favorited, created_at
                FROM feedbacks
                WHERE user_id = $1 AND feedback_date = $2
                ORDER BY created_at ASC
                """,
                user_id,
                feedback_date,
            )
        return [
            StoredFeedback(
                id=str(row["id"]),
                user_id=row["user_id"],
                persona_id=row["character_id"],
                content=row["content"],
                feedback_date=row["feedback_date"],
                diary_entry_id=row["diary_entry_id"],
                is_favorited=row["is_favorited"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def recent_contents(self, user_id: str, persona_id: str, limit: int = 2) -> list[str]:
        """Most recent feedback texts from one persona, oldest first."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT content FROM feedbacks
                WHERE user_id = $1 AND character_id = $2
                ORDER BY created_at DESC
                LIMIT $3
                """,
                user_id,
                persona_id,
                limit,
            )
        return [row["content"] for row in reversed(rows)]
