"""Queue data models for the feedback generation queue."""

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QueueStatus(str, Enum):
    """Lifecycle of a queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def active(cls) -> tuple["QueueStatus", ...]:
        return (cls.PENDING, cls.PROCESSING)


class QueueItem(BaseModel):
    """One unit of scheduled work: generate feedback for this user in this run."""

    id: str
    user_id: str
    status: QueueStatus = QueueStatus.PENDING
    priority: int = 0
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = 3
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "user_id": "user-123",
                "status": "pending",
                "priority": 0,
                "retry_count": 0,
                "max_retries": 3,
                "created_at": "2025-11-03T19:00:00Z",
                "metadata": {"enqueued_at": "2025-11-03T19:00:00Z"},
            }
        },
    )

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str:
        return str(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _decode_metadata(cls, value: Any) -> dict:
        # asyncpg hands JSONB back as text unless a codec is registered
        if value is None:
            return {}
        if isinstance(value, str):
            return json.loads(value) if value else {}
        return dict(value)

    @property
    def is_active(self) -> bool:
        return self.status in QueueStatus.active()


class QueueStats(BaseModel):
    """Point-in-time counts per status."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0
