"""
LLM client utilities.

Provides the factory for the chat model that drives the planner.
"""

import logging

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI

from uniagent.core.config import settings

logger = logging.getLogger(__name__)


def _strip_provider(model: str) -> str:
    return model.split("/", 1)[1] if "/" in model else model


def get_llm_client(
    model: str | None = None,
    temperature: float | None = None,
    max_tokens: int = 4000,
    api_key: str | None = None,
) -> BaseChatModel:
    """
    Get an LLM client instance.

    Args:
        model: Model identifier (e.g., "claude-sonnet-4-20250514", "openai/gpt-4o")
        temperature: Sampling temperature
        max_tokens: Maximum tokens in response
        api_key: Optional API key (uses settings if not provided)

    Returns:
        Configured LLM instance
    """
    model = model or settings.default_model
    temperature = settings.planner_temperature if temperature is None else temperature
    model_lower = model.lower()

    if "openai" in model_lower or "gpt" in model_lower:
        return ChatOpenAI(
            model=_strip_provider(model),
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=api_key or settings.openai_api_key,
        )

    if "anthropic" not in model_lower and "claude" not in model_lower:
        logger.warning(f"Unknown model '{model}', defaulting to {settings.default_model}")
        model = settings.default_model

    return ChatAnthropic(
        model=_strip_provider(model),
        temperature=temperature,
        max_tokens=max_tokens,
        api_key=api_key or settings.anthropic_api_key,
    )
