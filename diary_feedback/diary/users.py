"""Active-user directory."""

from asyncpg import Pool

from diary_feedback.core.errors import StoreUnavailableError
from diary_feedback.core.logging import get_logger
from diary_feedback.db.connection import CONNECTION_ERRORS
from diary_feedback.models.schemas import ActiveUser

logger = get_logger(__name__)

PLACEHOLDER_USER_ID = "sample-user"


class UserDirectory:
    """Lists users with recent diary or chat activity."""

    def __init__(self, pool: Pool):
        self.pool = pool

    async def list_active_users(self, lookback_days: int = 14) -> list[ActiveUser]:
        """
        Users who wrote a diary entry or chatted within the lookback window.

        Raises:
            StoreUnavailableError: If the database cannot be reached
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    """
                    SELECT u.id, u.email, u.created_at
                    FROM users u
                    WHERE EXISTS (
                        SELECT 1 FROM diaries d
                        WHERE d.user_id = u.id
                          AND d.created_at > NOW() - make_interval(days => $1)
                    )
                    OR EXISTS (
                        SELECT 1 FROM chat_sessions c
                        WHERE c.user_id = u.id
                          AND c.last_message_at > NOW() - make_interval(days => $1)
                    )
                    ORDER BY u.created_at ASC
                    """,
                    lookback_days,
                )
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError("user directory", str(e)) from e

        users = [ActiveUser(**dict(row)) for row in rows]
        logger.info(f"Found {len(users)} active users", lookback_days=lookback_days)
        return users


def placeholder_users() -> list[ActiveUser]:
    """Minimal stand-in list for development runs without a user directory."""
    return [ActiveUser(id=PLACEHOLDER_USER_ID, is_placeholder=True)]
