"""Model Backend adapters."""

from __future__ import annotations

import os

from agentrun.config import LLMConfig
from agentrun.errors import ConfigurationError
from agentrun.llm.providers.base import CallOptions, Provider
from agentrun.llm.providers.openai_compat import OpenAICompatProvider


def create_provider(config: LLMConfig) -> Provider:
    """Build a provider from an ``LLMConfig`` section."""
    if config.name in ("openai", "openai-compat"):
        return OpenAICompatProvider(
            url=config.api_base,
            model=config.model,
            api_key=os.environ.get(config.api_key_env, "") if config.api_key_env else "",
            timeout=config.timeout_seconds,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
    raise ConfigurationError(f"Unsupported provider type: {config.name}", provider=config.name)


__all__ = ["CallOptions", "OpenAICompatProvider", "Provider", "create_provider"]
