from __future__ import annotations

import logging

import openai
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

DEFAULT_OPENAI_MODEL = "gpt-4o"
MAX_TOKENS = 4000


class OpenAIFixClient(FixSuggestionClient):
    """
    Fix-suggestion client backed by the OpenAI Chat Completions API.

    Settings:
        OPENAI_API_KEY: API key (required)
        AUTOHEAL_OPENAI_MODEL: Model name (default: gpt-4o)
        AUTOHEAL_LLM_TIMEOUT: Request timeout in seconds (default: 120)
    """

    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.api_key = api_key or getattr(settings, "OPENAI_API_KEY", None)
        if not self.api_key:
            raise ConfigurationError(
                "AUTOHEAL_LLM_PROVIDER is 'openai' but OPENAI_API_KEY "
                "is not set"
            )
        self.model = model or getattr(
            settings,
            "AUTOHEAL_OPENAI_MODEL",
            DEFAULT_OPENAI_MODEL,
        )
        if timeout_seconds is None:
            timeout_seconds = get_llm_timeout()
        self.timeout_seconds = timeout_seconds
        self._client: openai.OpenAI | None = None

    def _get_client(self) -> openai.OpenAI:
        if self._client is None:
            self._client = openai.OpenAI(
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
            response = client.chat.completions.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
        except openai.APITimeoutError as e:
            raise CollaboratorTimeout("openai", self.timeout_seconds) from e
        except openai.OpenAIError as e:
            logger.warning("OpenAI request failed: %s", e)
            raise FixSuggestionError(f"OpenAI request failed: {e}") from e

        if not response.choices:
            raise FixSuggestionError("No response from OpenAI")
        text = response.choices[0].message.content
        return parse_fix_response(text)
