from __future__ import annotations

from django_autoheal.conf import LLM_PROVIDERS
from django_autoheal.conf import get_llm_provider
from django_autoheal.exceptions import ConfigurationError
from django_autoheal.llm.anthropic_client import AnthropicFixClient
from django_autoheal.llm.base import FileChange
from django_autoheal.llm.base import FixSuggestion
from django_autoheal.llm.base import FixSuggestionClient
from django_autoheal.llm.base import SuggestedFix
from django_autoheal.llm.base import parse_fix_response
from django_autoheal.llm.openai_client import OpenAIFixClient

__all__ = [
    "AnthropicFixClient",
    "FileChange",
    "FixSuggestion",
    "FixSuggestionClient",
    "OpenAIFixClient",
    "SuggestedFix",
    "build_fix_client",
    "parse_fix_response",
]


def build_fix_client(provider: str | None = None) -> FixSuggestionClient:
    """
    Build the fix-suggestion client for the configured provider.

    Args:
        provider: Provider name (default: AUTOHEAL_LLM_PROVIDER)

    Returns:
        A ready FixSuggestionClient

    Raises:
        ConfigurationError: If the provider is unknown or has no API key
    """
    provider = provider or get_llm_provider()
    if provider == "anthropic":
        return AnthropicFixClient()
    if provider == "openai":
        return OpenAIFixClient()
    raise ConfigurationError(
        f"Unknown LLM provider: {provider!r} "
        f"(expected one of {', '.join(LLM_PROVIDERS)})"
    )
