"""Pydantic schemas shared across the batch."""

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from diary_feedback.models.queue import QueueStats


class Mood(str, Enum):
    """Mood label chosen by the user when writing an entry."""

    HAPPY = "happy"
    SAD = "sad"
    NEUTRAL = "neutral"
    EXCITED = "excited"
    ANGRY = "angry"
    ANXIOUS = "anxious"
    PEACEFUL = "peaceful"
    CONFUSED = "confused"


class DiaryEntry(BaseModel):
    """A diary entry, read-only to the batch."""

    id: int
    user_id: str
    content: str = ""
    mood: Mood = Mood.NEUTRAL
    created_at: datetime
    is_sample: bool = False

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @field_validator("content", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""


class ActiveUser(BaseModel):
    """A user with recent diary or chat activity."""

    id: str
    email: Optional[str] = None
    created_at: Optional[datetime] = None
    is_placeholder: bool = False


class Persona(BaseModel):
    """A fictional character that writes feedback."""

    id: str
    name: str
    role: str
    personality: str
    speech_style: str
    system_prompt: str = ""
    is_active: bool = True

    model_config = ConfigDict(frozen=True)


class GeneratedFeedback(BaseModel):
    """Feedback text produced for one (persona, diary entry) pair."""

    persona_id: str
    persona_name: str
    content: str
    generated_at: datetime
    prompt_used: str
    tokens_used: Optional[int] = None
    model: str


class StoredFeedback(BaseModel):
    """A persisted feedback row."""

    id: str
    user_id: str
    persona_id: str
    content: str
    feedback_date: date
    diary_entry_id: Optional[int] = None
    is_favorited: bool = False
    created_at: Optional[datetime] = None


class SaveStatus(str, Enum):
    SAVED = "saved"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class SaveOutcome(BaseModel):
    """Result of saving one generated feedback."""

    status: SaveStatus
    persona_id: str
    persona_name: str
    feedback_id: Optional[str] = None
    error: Optional[str] = None


class BatchSaveResult(BaseModel):
    """Aggregate of a save_many call."""

    saved_ids: list[str] = Field(default_factory=list)
    failed: list[dict] = Field(default_factory=list)
    duplicates_skipped: int = 0

    @property
    def total(self) -> int:
        return len(self.saved_ids) + len(self.failed) + self.duplicates_skipped


class PersonaFailure(BaseModel):
    """A persona call that did not yield stored feedback."""

    persona_id: str
    persona_name: str
    diary_entry_id: int
    error_kind: str
    message: str


class UserResult(BaseModel):
    """Outcome of processing one user in a run."""

    user_id: str
    success: bool
    feedback_count: int = 0
    duplicates_skipped: int = 0
    entries_found: int = 0
    attempts: int = 1
    sample_data: bool = False
    # Stopped mid-user by request_stop; the queue item stays in processing
    interrupted: bool = False
    error: Optional[str] = None
    persona_failures: list[PersonaFailure] = Field(default_factory=list)


class RunMode(str, Enum):
    PERSISTENT = "persistent"
    IN_MEMORY = "in_memory"


class RunResult(BaseModel):
    """Aggregate report of one scheduler invocation."""

    success: bool
    processed: int = 0
    failed: int = 0
    results: list[UserResult] = Field(default_factory=list)
    queue_stats: QueueStats = Field(default_factory=QueueStats)
    duration_ms: float = 0.0
    mode: RunMode = RunMode.PERSISTENT
    started_at: datetime
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    notes: list[str] = Field(default_factory=list)
    stopped_early: bool = False
    error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.mode == RunMode.IN_MEMORY or bool(self.notes)
