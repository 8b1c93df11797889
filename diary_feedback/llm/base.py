"""Base abstract class for LLM providers."""

import time
from abc import ABC, abstractmethod

from diary_feedback.core.logging import get_logger
from diary_feedback.llm.models import Completion

logger = get_logger(__name__)


class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, model: str, api_key: str):
        """
        Initialize LLM provider.

        Args:
            model: Default model identifier (e.g., "gpt-4o")
            api_key: API key for the provider
        """
        self.model = model
        self.api_key = api_key
        self.provider_name = self.__class__.__name__.replace("Provider", "").lower()

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        max_tokens: int,
        temperature: float,
        model: str | None = None,
    ) -> Completion:
        """
        Generate text for a system prompt.

        Args:
            system_prompt: Full prompt sent as the system message
            max_tokens: Output token cap
            temperature: Sampling temperature
            model: Model override, defaults to the provider's model

        Returns:
            Completion with text and usage

        Raises:
            LLMProviderError: If the call fails
        """
        pass

    @abstractmethod
    def get_cost_estimate(self, input_tokens: int, output_tokens: int) -> float:
        """
        Calculate estimated cost for token usage.

        Args:
            input_tokens: Number of input tokens
            output_tokens: Number of output tokens

        Returns:
            Estimated cost in USD
        """
        pass

    async def close(self) -> None:
        """Release any network resources held by the provider."""
        return None

    async def _time_execution(self, coro):
        """
        Execute a coroutine and measure execution time.

        Args:
            coro: Coroutine to execute

        Returns:
            Tuple of (result, execution_time_in_seconds)
        """
        start_time = time.time()
        result = await coro
        execution_time = time.time() - start_time
        return result, execution_time
