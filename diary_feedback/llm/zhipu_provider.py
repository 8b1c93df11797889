"""Zhipu GLM provider implementation (for development/testing)."""

import httpx

from diary_feedback.core.logging import get_logger
from diary_feedback.llm.base import BaseLLMProvider
from diary_feedback.llm.errors import (
    APIError,
    InvalidResponseError,
    NetworkError,
    RateLimitError,
    TimeoutError,
)
from diary_feedback.llm.models import Completion

logger = get_logger(__name__)

# Zhipu pricing (as of 2025-01, check https://open.bigmodel.cn/)
# Pricing: approximately $0.10 per 1M input tokens, $0.40 per 1M output tokens
ZHIPU_INPUT_COST_PER_1M = 0.10
ZHIPU_OUTPUT_COST_PER_1M = 0.40

ZHIPU_API_BASE = "https://open.bigmodel.cn/api/paas/v4/chat/completions"


class ZhipuProvider(BaseLLMProvider):
    """Zhipu GLM provider over plain HTTP (development/testing)."""

    def __init__(self, model: str, api_key: str, client: httpx.AsyncClient | None = None):
        """
        Initialize Zhipu provider.

        Args:
            model: Model identifier (e.g., "glm-4")
            api_key: Zhipu API key
            client: HTTP client, mainly for tests (e.g. with httpx.MockTransport)
        """
        super().__init__(model, api_key)
        self.provider_name = "zhipu"
        self.client = client or httpx.AsyncClient(timeout=60.0)

    async def complete(
        self,
        system_prompt: str,
        max_tokens: int,
        temperature: float,
        model: str | None = None,
    ) -> Completion:
        """
        Generate text using Zhipu GLM.

        Raises:
            RateLimitError: If rate limit is exceeded
            TimeoutError: If the request times out
            NetworkError: If the API cannot be reached
            APIError: If API call fails
            InvalidResponseError: If the response is empty
        """
        model = model or self.model
        try:
            result, execution_time = await self._time_execution(
                self._call_zhipu(system_prompt, model, max_tokens, temperature)
            )

            usage = result.get("usage", {})
            input_tokens = usage.get("prompt_tokens", 0)
            output_tokens = usage.get("completion_tokens", 0)
            total_tokens = input_tokens + output_tokens
            cost = self.get_cost_estimate(input_tokens, output_tokens)

            choices = result.get("choices", [])
            if not choices:
                raise InvalidResponseError("Empty response from Zhipu")

            text = (choices[0].get("message", {}).get("content") or "").strip()
            if not text:
                raise InvalidResponseError("Empty content in Zhipu response")

            logger.debug(
                f"Zhipu API call completed: {total_tokens} tokens, "
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

        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                raise RateLimitError(f"Zhipu rate limit: {e}") from e
            raise APIError(
                f"Zhipu API error: {e}",
                status_code=e.response.status_code,
            ) from e
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Zhipu request timeout: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Zhipu network error: {e}") from e

    async def _call_zhipu(
        self, system_prompt: str, model: str, max_tokens: int, temperature: float
    ) -> dict:
        """Make async call to Zhipu API."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        payload = {
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }

        response = await self.client.post(
            ZHIPU_API_BASE,
            headers=headers,
            json=payload,
        )
        response.raise_for_status()
        return response.json()

    def get_cost_estimate(self, input_tokens: int, output_tokens: int) -> float:
        input_cost = (input_tokens / 1_000_000) * ZHIPU_INPUT_COST_PER_1M
        output_cost = (output_tokens / 1_000_000) * ZHIPU_OUTPUT_COST_PER_1M
        return input_cost + output_cost

    async def close(self) -> None:
        await self.client.aclose()
