"""OpenAI GPT provider implementation."""

from openai import APIConnectionError as OpenAIConnectionError
from openai import APIStatusError as OpenAIStatusError
from openai import APITimeoutError as OpenAITimeoutError
from openai import AsyncOpenAI
from openai import RateLimitError as OpenAIRateLimitError

from diary_feedback.core.logging import get_logger
from diary_feedback.llm.base import BaseLLMProvider
from diary_feedback.llm.errors import (
    APIError,
    InvalidResponseError,
    NetworkError,
    QuotaExceededError,
    RateLimitError,
    TimeoutError,
)
from diary_feedback.llm.models import Completion

logger = get_logger(__name__)

# OpenAI pricing (as of 2025-01, check https://openai.com/pricing)
# Per 1M tokens
OPENAI_PRICING = {
    "gpt-4o": {"input": 2.50, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4-turbo": {"input": 10.0, "output": 30.0},
    "gpt-3.5-turbo": {"input": 0.50, "output": 1.50},
}


class OpenAIProvider(BaseLLMProvider):
    """OpenAI GPT provider for persona feedback."""

    def __init__(self, model: str, api_key: str, client: AsyncOpenAI | None = None):
        """
        Initialize OpenAI provider.

        Args:
            model: Model identifier (e.g., "gpt-4o")
            api_key: OpenAI API key
            client: Preconfigured client, mainly for tests
        """
        super().__init__(model, api_key)
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.provider_name = "openai"

    async def complete(
        self,
        system_prompt: str,
        max_tokens: int,
        temperature: float,
        model: str | None = None,
    ) -> Completion:
        """
        Generate text using OpenAI chat completions.

        Raises:
            RateLimitError: If rate limit is exceeded
            QuotaExceededError: If quota is exceeded
            TimeoutError: If the request times out
            NetworkError: If the API cannot be reached
            APIError: If API call fails
            InvalidResponseError: If the response is empty
        """
        model = model or self.model
        try:
            logger.debug(
                f"Calling OpenAI API with model {model}",
                prompt_length=len(system_prompt),
            )

            result, execution_time = await self._time_execution(
                self.client.chat.completions.create(
                    model=model,
                    messages=[{"role": "system", "content": system_prompt}],
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            )

            text = (result.choices[0].message.content or "").strip() if result.choices else ""
            if not text:
                raise InvalidResponseError("Empty response from OpenAI")

            usage = result.usage
            input_tokens = usage.prompt_tokens if usage else 0
            output_tokens = usage.completion_tokens if usage else 0
            total_tokens = usage.total_tokens if usage else None
            cost = self.get_cost_estimate(input_tokens, output_tokens)

            logger.debug(
                f"OpenAI API call completed: {total_tokens} tokens, "
                f"cost: ${cost:.4f}, time: {execution_time:.2f}s"
            )

            return Completion(
                text=text,
                model_used=model,
                provider=self.provider_name,
                tokens_used=total_tokens,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=cost,
                processing_time=execution_time,
            )

        except OpenAIRateLimitError as e:
            if "quota" in str(e).lower() or "insufficient" in str(e).lower():
                raise QuotaExceededError(f"OpenAI quota exceeded: {e}", status_code=429) from e
            raise RateLimitError(f"OpenAI rate limit exceeded: {e}") from e
        except OpenAITimeoutError as e:
            raise TimeoutError(f"OpenAI request timeout: {e}") from e
        except OpenAIConnectionError as e:
            raise NetworkError(f"OpenAI network error: {e}") from e
        except OpenAIStatusError as e:
            raise APIError(f"OpenAI API error: {e}", status_code=e.status_code) from e
        except InvalidResponseError:
            raise

    def get_cost_estimate(self, input_tokens: int, output_tokens: int) -> float:
        # Unknown models are priced as gpt-4o
        pricing = OPENAI_PRICING.get(self.model, OPENAI_PRICING["gpt-4o"])

        input_cost = (input_tokens / 1_000_000) * pricing["input"]
        output_cost = (output_tokens / 1_000_000) * pricing["output"]
        return input_cost + output_cost

    async def close(self) -> None:
        await self.client.close()
