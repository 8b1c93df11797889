"""Anthropic Claude provider implementation."""

from anthropic import APIConnectionError as AnthropicConnectionError
from anthropic import APIStatusError as AnthropicStatusError
from anthropic import APITimeoutError as AnthropicTimeoutError
from anthropic import AsyncAnthropic
from anthropic import RateLimitError as AnthropicRateLimitError

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

# Claude pricing (as of 2025-01, check https://www.anthropic.com/pricing)
# Claude Sonnet 4.5: $3 per 1M input tokens, $15 per 1M output tokens
CLAUDE_INPUT_COST_PER_1M = 3.0
CLAUDE_OUTPUT_COST_PER_1M = 15.0

# Claude requires at least one user turn
FEEDBACK_USER_TURN = "Please write your feedback now."


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Claude provider for persona feedback."""

    def __init__(self, model: str, api_key: str, client: AsyncAnthropic | None = None):
        """
        Initialize Anthropic provider.

        Args:
            model: Model identifier (e.g., "claude-sonnet-4-5-20250929")
            api_key: Anthropic API key
            client: Preconfigured client, mainly for tests
        """
        super().__init__(model, api_key)
        self.client = client or AsyncAnthropic(api_key=api_key)
        self.provider_name = "anthropic"

    async def complete(
        self,
        system_prompt: str,
        max_tokens: int,
        temperature: float,
        model: str | None = None,
    ) -> Completion:
        """
        Generate text using Claude.

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
            result, execution_time = await self._time_execution(
                self.client.messages.create(
                    model=model,
                    system=system_prompt,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=[{"role": "user", "content": FEEDBACK_USER_TURN}],
                )
            )

            text = "".join(
                block.text for block in result.content if getattr(block, "type", "") == "text"
            ).strip()
            if not text:
                raise InvalidResponseError("Empty response from Claude")

            input_tokens = result.usage.input_tokens
            output_tokens = result.usage.output_tokens
            cost = self.get_cost_estimate(input_tokens, output_tokens)

            logger.debug(
                f"Claude API call completed: {input_tokens + output_tokens} tokens, "
                f"cost: ${cost:.4f}, time: {execution_time:.2f}s"
            )

            return Completion(
                text=text,
                model_used=model,
                provider=self.provider_name,
                tokens_used=input_tokens + output_tokens,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=cost,
                processing_time=execution_time,
            )

        except AnthropicRateLimitError as e:
            retry_after = None
            if getattr(e, "response", None) is not None:
                header = e.response.headers.get("retry-after")
                retry_after = int(header) if header and header.isdigit() else None
            raise RateLimitError(f"Claude rate limit exceeded: {e}", retry_after=retry_after) from e
        except AnthropicTimeoutError as e:
            raise TimeoutError(f"Claude request timeout: {e}") from e
        except AnthropicConnectionError as e:
            raise NetworkError(f"Claude network error: {e}") from e
        except AnthropicStatusError as e:
            if e.status_code == 402:
                raise QuotaExceededError(f"Claude quota exceeded: {e}", status_code=402) from e
            raise APIError(f"Claude API error: {e}", status_code=e.status_code) from e
        except InvalidResponseError:
            raise

    def get_cost_estimate(self, input_tokens: int, output_tokens: int) -> float:
        input_cost = (input_tokens / 1_000_000) * CLAUDE_INPUT_COST_PER_1M
        output_cost = (output_tokens / 1_000_000) * CLAUDE_OUTPUT_COST_PER_1M
        return input_cost + output_cost

    async def close(self) -> None:
        await self.client.close()
