"""LLM provider abstraction for persona feedback."""

from diary_feedback.llm.base import BaseLLMProvider
from diary_feedback.llm.errors import (
    APIError,
    InvalidResponseError,
    LLMProviderError,
    NetworkError,
    QuotaExceededError,
    RateLimitError,
)
from diary_feedback.llm.factory import build_llm_provider, validate_generation_config
from diary_feedback.llm.models import Completion

__all__ = [
    "APIError",
    "BaseLLMProvider",
    "Completion",
    "InvalidResponseError",
    "LLMProviderError",
    "NetworkError",
    "QuotaExceededError",
    "RateLimitError",
    "build_llm_provider",
    "validate_generation_config",
]
