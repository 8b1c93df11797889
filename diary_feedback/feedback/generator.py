"""Persona feedback generation with retry and exponential backoff.

Each call to the text-generation API is classified on failure. Rate limits,
5xx responses, timeouts and network errors are retried with exponential
backoff; authentication errors, bad requests and anything unrecognised fail
immediately. Both paths end in a ``GenerationResult`` carrying a typed
``GenerationError`` rather than an exception.
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from diary_feedback.core.logging import get_logger
from diary_feedback.feedback.prompt import build_feedback_prompt
from diary_feedback.llm import errors as llm_errors
from diary_feedback.llm.base import BaseLLMProvider
from diary_feedback.models.schemas import DiaryEntry, GeneratedFeedback, Persona

logger = get_logger(__name__)

LONG_FEEDBACK_WARNING = 300


class ErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    AUTH_ERROR = "auth_error"
    BAD_REQUEST = "bad_request"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.SERVER_ERROR, ErrorKind.TIMEOUT, ErrorKind.NETWORK_ERROR}
)


class RetryConfig(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30000, ge=0)


class GenerationOptions(BaseModel):
    model: str | None = None
    max_tokens: int = 200
    temperature: float = 0.8
    timeout: float = 30.0
    min_length: int = 20
    retry: RetryConfig = Field(default_factory=RetryConfig)


class GenerationError(Exception):
    """A classified generation failure."""

    def __init__(self, kind: ErrorKind, message: str, status_code: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class GenerationResult(BaseModel):
    """Outcome of one persona/entry generation."""

    success: bool
    feedback: GeneratedFeedback | None = None
    error: GenerationError | None = None
    retry_count: int = 0

    model_config = ConfigDict(arbitrary_types_allowed=True)


def classify_error(error: BaseException) -> GenerationError:
    """Map an exception from the provider boundary onto an ErrorKind."""
    if isinstance(error, GenerationError):
        return error

    message = str(error) or error.__class__.__name__
    lowered = message.lower()
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if not isinstance(status, int):
        status = None

    if (
        isinstance(error, (llm_errors.RateLimitError, llm_errors.QuotaExceededError))
        or status == 429
        or "rate limit" in lowered
        or "quota" in lowered
    ):
        kind = ErrorKind.RATE_LIMIT
    elif status is not None and status >= 500:
        kind = ErrorKind.SERVER_ERROR
    elif (
        isinstance(error, (llm_errors.TimeoutError, TimeoutError))
        or "timeout" in lowered
        or "timed out" in lowered
        or "econnreset" in lowered
    ):
        kind = ErrorKind.TIMEOUT
    elif (
        isinstance(error, (llm_errors.NetworkError, ConnectionError))
        or "network" in lowered
        or "enotfound" in lowered
        or "econnrefused" in lowered
    ):
        kind = ErrorKind.NETWORK_ERROR
    elif status in (401, 403):
        kind = ErrorKind.AUTH_ERROR
    elif status == 400:
        kind = ErrorKind.BAD_REQUEST
    else:
        kind = ErrorKind.UNKNOWN

    return GenerationError(kind, message, status_code=status)


def calculate_delay(attempt: int, config: RetryConfig) -> int:
    """Backoff delay in milliseconds before retry number ``attempt + 1``."""
    delay = config.base_delay_ms * (config.backoff_multiplier**attempt)
    return int(min(delay, config.max_delay_ms))


class FeedbackGenerator:
    """Generates persona feedback through an injected LLM provider."""

    def __init__(
        self,
        provider: BaseLLMProvider,
        options: GenerationOptions | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        offset_hours: int = 9,
    ):
        self.provider = provider
        self.options = options or GenerationOptions()
        self._sleep = sleep
        self.offset_hours = offset_hours

    async def generate(
        self,
        persona: Persona,
        entry: DiaryEntry,
        options: GenerationOptions | None = None,
        previous_feedbacks: list[str] | None = None,
    ) -> GenerationResult:
        """
        Generate feedback from ``persona`` for ``entry``.

        Returns:
            GenerationResult; on failure ``error`` holds the classification
        """
        options = options or self.options
        model = options.model or self.provider.model
        prompt = build_feedback_prompt(persona, entry, previous_feedbacks, self.offset_hours)
        retry = options.retry

        last_error: GenerationError | None = None
        for attempt in range(retry.max_retries + 1):
            try:
                completion = await asyncio.wait_for(
                    self.provider.complete(
                        system_prompt=prompt,
                        max_tokens=options.max_tokens,
                        temperature=options.temperature,
                        model=model,
                    ),
                    timeout=options.timeout,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = classify_error(e)
                logger.warning(
                    f"Feedback generation for {persona.name} failed (attempt {attempt + 1})",
                    persona_id=persona.id,
                    diary_entry_id=entry.id,
                    error_kind=last_error.kind.value,
                    retryable=last_error.retryable,
                    status_code=last_error.status_code,
                    error=last_error.message,
                )
                if not last_error.retryable or attempt == retry.max_retries:
                    break
                delay = calculate_delay(attempt, retry)
                logger.info(f"Waiting {delay}ms before retry...", persona_id=persona.id)
                await self._sleep(delay / 1000)
                continue

            content = completion.text.strip()
            if len(content) < options.min_length:
                # Short output is a failed generation, never retried
                return GenerationResult(
                    success=False,
                    error=GenerationError(
                        ErrorKind.UNKNOWN,
                        f"Generated feedback is too short ({len(content)} chars)",
                    ),
                    retry_count=attempt,
                )
            if len(content) > LONG_FEEDBACK_WARNING:
                logger.warning(
                    f"Feedback for {persona.name} is quite long: {len(content)} characters",
                    persona_id=persona.id,
                )
            if attempt > 0:
                logger.info(f"Feedback for {persona.name} succeeded after {attempt} retries")

            return GenerationResult(
                success=True,
                feedback=GeneratedFeedback(
                    persona_id=persona.id,
                    persona_name=persona.name,
                    content=content,
                    generated_at=datetime.now(UTC),
                    prompt_used=prompt,
                    tokens_used=completion.tokens_used,
                    model=completion.model_used or model,
                ),
                retry_count=attempt,
            )

        return GenerationResult(
            success=False,
            error=last_error,
            retry_count=attempt,
        )

    async def generate_for_entry(
        self,
        personas: list[Persona],
        entry: DiaryEntry,
        options: GenerationOptions | None = None,
        pause_seconds: float = 0.0,
    ) -> dict:
        """
        Generate feedback from every active persona for one entry, one at a time.

        Returns:
            Dict with successful feedback, failures and a summary
        """
        active = [p for p in personas if p.is_active]
        successful: list[GeneratedFeedback] = []
        failed: list[dict] = []
        total_tokens = 0

        for index, persona in enumerate(active):
            if index and pause_seconds:
                await self._sleep(pause_seconds)
            result = await self.generate(persona, entry, options)
            if result.success and result.feedback:
                successful.append(result.feedback)
                total_tokens += result.feedback.tokens_used or 0
            else:
                failed.append(
                    {
                        "persona_name": persona.name,
                        "error_kind": result.error.kind.value if result.error else "unknown",
                        "error": result.error.message if result.error else "Unknown error",
                    }
                )

        summary = {
            "total": len(active),
            "successful": len(successful),
            "failed": len(failed),
            "total_tokens": total_tokens,
        }
        logger.info("Feedback generation for entry complete", diary_entry_id=entry.id, **summary)
        return {"successful": successful, "failed": failed, "summary": summary}
