"""Factory for creating LLM provider instances."""

from typing import TYPE_CHECKING

from diary_feedback.core.config import Settings
from diary_feedback.core.logging import get_logger
from diary_feedback.llm.errors import LLMProviderError

if TYPE_CHECKING:
    from diary_feedback.llm.base import BaseLLMProvider

logger = get_logger(__name__)


def build_llm_provider(settings: Settings) -> "BaseLLMProvider":
    """
    Build the configured LLM provider.

    The caller owns the returned instance and should ``await provider.close()``
    when done.

    Returns:
        Configured LLM provider instance

    Raises:
        LLMProviderError: If provider configuration is invalid
    """
    try:
        config = settings.get_llm_config()
    except ValueError as e:
        logger.error(f"LLM provider configuration error: {e}")
        raise LLMProviderError(f"Configuration error: {e}") from e

    provider_name = config["provider"]
    model = config["model"]
    api_key = config["api_key"]

    logger.info(f"Initializing LLM provider: {provider_name} with model: {model}")

    if provider_name == "openai":
        from diary_feedback.llm.openai_provider import OpenAIProvider

        provider = OpenAIProvider(model=model, api_key=api_key)
    elif provider_name == "anthropic":
        from diary_feedback.llm.anthropic_provider import AnthropicProvider

        provider = AnthropicProvider(model=model, api_key=api_key)
    elif provider_name == "zhipu":
        from diary_feedback.llm.zhipu_provider import ZhipuProvider

        provider = ZhipuProvider(model=model, api_key=api_key)
    else:
        raise LLMProviderError(f"Unknown provider: {provider_name}")

    logger.info(f"LLM provider {provider_name} initialized successfully")
    return provider


def validate_generation_config(settings: Settings) -> list[str]:
    """Check the LLM settings without building a client; returns problems found."""
    errors: list[str] = []
    try:
        config = settings.get_llm_config()
    except ValueError as e:
        return [str(e)]
    if len(config["api_key"]) < 10:
        errors.append(f"API key for {config['provider']} appears to be invalid")
    if not config["model"]:
        errors.append(f"No model configured for {config['provider']}")
    return errors
