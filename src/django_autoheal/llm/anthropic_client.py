from __future__ import annotations

import logging

import anthropic
from django.conf import settings

from django_autoheal.conf import get_llm_timeout
from django_autoheal.exceptions import CollaboratorTimeout
from django_autoheal.exceptions import ConfigurationError
from django_autoheal.exceptions import FixSuggestionError
from django_autoheal.llm.base import SYSTEM_PROMPT
from django_autoheal.llm.base import FixSuggestion
from django_autoheal.llm.base import FixSuggestionClient
from django_autoheal.llm.base import build_user_prompt
from django_autoheal.llm.base import parse_fix_response

logger = logging.getLogger(__name__)

DEFAULT_ANTHROPIC_MODEL = "claude-sonnet-4-20250514"
MAX_TOKENS = 4000


class AnthropicFixClient(FixSuggestionClient):
    """
    Fix-suggestion client backed by the Anthropic Messages API.

    Settings:
        ANTHROPIC_API_KEY: API key (required)
        AUTOHEAL_ANTHROPIC_MODEL: Model name
        AUTOHEAL_LLM_TIMEOUT: Request timeout in seconds (default: 120)
    """

    name = "anthropic"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.api_key = api_key or getattr(settings, "ANTHROPIC_API_KEY", None)
        if not self.api_key:
            raise ConfigurationError(
                "AUTOHEAL_LLM_PROVIDER is 'anthropic' but ANTHROPIC_API_KEY "
                "is not set"
            )
        self.model = model or getattr(
            settings,
            "AUTOHEAL_ANTHROPIC_MODEL",
            DEFAULT_ANTHROPIC_MODEL,
        )
        if timeout_seconds is None:
            timeout_seconds = get_llm_timeout()
        self.timeout_seconds = timeout_seconds
        self._client: anthropic.Anthropic | None = None

    def _get_client(self) -> anthropic.Anthropic:
        if self._client is None:
            self._client = anthropic.Anthropic(
                api_key=self.api_key,
                timeout=self.timeout_seconds,
            )
        return self._client

    def generate_fix(
        self,
        error_message: str,
        file_contents: dict[str, str],
        context: str | None = None,
    ) -> FixSuggestion:
        client = self._get_client()
        prompt = build_user_prompt(error_message, file_contents, context)

        try:
            response = client.messages.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APITimeoutError as e:
            raise CollaboratorTimeout(
                "anthropic",
                self.timeout_seconds,
            ) from e
        except anthropic.APIError as e:
            logger.warning("Anthropic request failed: %s", e)
            raise FixSuggestionError(f"Anthropic request failed: {e}") from e

        text = "".join(
            block.text
            for block in response.content
            if getattr(block, "type", None) == "text"
        )
        logger.debug(
            "Anthropic fix response: model=%s, chars=%d",
            self.model,
            len(text),
        )
        return parse_fix_response(text)
