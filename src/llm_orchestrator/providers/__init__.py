"""LLM Provider implementations

This package contains individual LLM provider implementations following a common interface.
"""

import logging
from typing import List

from .base import LLMProvider
from .gemini import GeminiProvider
from .openai import OpenAIProvider, OpenAIToolCallAssembler

logger = logging.getLogger(__name__)

_PROVIDERS = {
    "openai": OpenAIProvider,
    "gemini": GeminiProvider,
}


def create_provider(provider_name: str, config) -> LLMProvider:
    """Factory function building a provider from configuration

    Args:
        provider_name: Name of the provider ('openai' or 'gemini', case-insensitive)
        config: AppConfig with API keys and model names

    Raises:
        ValueError: If provider_name is not registered
    """
    key = provider_name.strip().lower()
    if key not in _PROVIDERS:
        raise ValueError(f"Unknown LLM provider: {provider_name}")

    if key == "openai":
        return OpenAIProvider(api_key=config.openai_api_key, model=config.openai_model)
    return GeminiProvider(api_key=config.google_api_key, model=config.gemini_model)


def create_providers(config) -> List[LLMProvider]:
    """Build providers in the configured order, skipping unknown names."""
    providers = []
    for name in config.provider_order:
        try:
            providers.append(create_provider(name, config))
        except ValueError as e:
            logger.warning("%s", e)
    return providers


__all__ = [
    "LLMProvider",
    "OpenAIProvider",
    "GeminiProvider",
    "OpenAIToolCallAssembler",
    "create_provider",
    "create_providers",
]
