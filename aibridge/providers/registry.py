# aibridge/providers/registry.py
from typing import Any, Dict

from aibridge.providers.anthropic import AnthropicAdapter
from aibridge.providers.base import ProviderAdapter
from aibridge.providers.gemini import GeminiAdapter
from aibridge.providers.openai import OpenAIAdapter


def provider_for_model(model: str) -> str:
    """Name of the provider serving ``model``."""
    if model.startswith("claude-"):
        return "anthropic"
    if model.startswith("gemini") or model.startswith("models/gemini"):
        return "gemini"
    return "openai"


def default_adapters(config: Any = None) -> Dict[str, ProviderAdapter]:
    """Build one adapter per supported provider from a :class:`BridgeConfig`."""
    timeout = getattr(config, "request_timeout", 60.0)
    openai_kwargs = {"timeout": timeout}
    anthropic_kwargs = {"timeout": timeout}
    if getattr(config, "openai_base_url", None):
        openai_kwargs["base_url"] = config.openai_base_url
    if getattr(config, "anthropic_base_url", None):
        anthropic_kwargs["base_url"] = config.anthropic_base_url
    return {
        "openai": OpenAIAdapter(**openai_kwargs),
        "anthropic": AnthropicAdapter(**anthropic_kwargs),
        "gemini": GeminiAdapter(),
    }
