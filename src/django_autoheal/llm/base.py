from __future__ import annotations

import json
import logging
import re
from abc import ABC
from abc import abstractmethod
from typing import Literal

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError

from django_autoheal.exceptions import FixSuggestionError

logger = logging.getLogger(__name__)

JSON_OBJECT_PATTERN = re.compile(r"\{[\s\S]*\}")

SYSTEM_PROMPT = """\
You are an expert software engineer specializing in debugging and fixing \
code issues.

Given an error message and relevant file contents, analyze the problem and \
suggest a fix.

Provide a structured response in JSON format with:
- analysis: your analysis of the error
- rootCause: the identified root cause
- suggestedFix: an object with:
  - description: what the fix does
  - files: an array of file changes, each with:
    - path: the file path, relative to the repository root
    - action: "create", "modify", or "delete"
    - content: the full new content (for create/modify)
    - diff: a unified diff showing the changes (for modify)
- confidence: your confidence level from 0 to 1
- additionalNotes: any additional context or warnings

Be precise with file paths and make sure the suggested code is correct.
Respond with valid JSON only."""


class FileChange(BaseModel):
    """A single file change proposed by a fix suggestion."""

    path: str
    action: Literal["create", "modify", "delete"]
    content: str | None = None
    diff: str | None = None


class SuggestedFix(BaseModel):
    description: str
    files: list[FileChange] = Field(default_factory=list)


class FixSuggestion(BaseModel):
    """
    Structured answer of a fix-suggestion provider.

    The JSON wire format uses camelCase keys (``rootCause``,
    ``suggestedFix``, ``additionalNotes``); both spellings are accepted
    when validating.
    """

    model_config = ConfigDict(populate_by_name=True)

    analysis: str
    root_cause: str = Field(alias="rootCause")
    suggested_fix: SuggestedFix = Field(alias="suggestedFix")
    confidence: float = Field(ge=0, le=1)
    additional_notes: str | None = Field(
        default=None,
        alias="additionalNotes",
    )


def build_user_prompt(
    error_message: str,
    file_contents: dict[str, str],
    context: str | None = None,
) -> str:
    """Render the error, the relevant files and optional context."""
    files_section = "\n\n".join(
        f"### {path}\n```\n{content}\n```"
        for path, content in file_contents.items()
    )
    sections = [
        f"## Error Message\n```\n{error_message}\n```",
        f"## Relevant Files\n{files_section}",
    ]
    if context:
        sections.append(f"## Additional Context\n{context}")
    sections.append("Analyze the error and provide a fix in JSON format.")
    return "\n\n".join(sections)


def parse_fix_response(text: str | None) -> FixSuggestion:
    """
    Extract and validate the JSON fix suggestion from a model answer.

    Args:
        text: Raw text returned by the provider

    Returns:
        The validated FixSuggestion

    Raises:
        FixSuggestionError: If no JSON object is found or it is invalid
    """
    if not text:
        raise FixSuggestionError("Empty response from fix provider")

    match = JSON_OBJECT_PATTERN.search(text)
    if match is None:
        raise FixSuggestionError("No JSON found in fix provider response")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise FixSuggestionError(
            f"Fix provider returned malformed JSON: {e}"
        ) from e

    try:
        return FixSuggestion.model_validate(data)
    except ValidationError as e:
        raise FixSuggestionError(
            f"Fix provider response failed validation: {e}"
        ) from e


class FixSuggestionClient(ABC):
    """
    Interface for providers that turn a pipeline failure into a fix.

    Concrete clients are chosen once from configuration by
    :func:`django_autoheal.llm.build_fix_client`.
    """

    name: str = ""

    @abstractmethod
    def generate_fix(
        self,
        error_message: str,
        file_contents: dict[str, str],
        context: str | None = None,
    ) -> FixSuggestion:
        """
        Request a fix suggestion.

        Args:
            error_message: Summary of the failure
            file_contents: Map of repository paths to their contents
            context: Optional extra context (JSON text)

        Returns:
            The validated FixSuggestion

        Raises:
            FixSuggestionError: If the provider fails or answers invalidly
            CollaboratorTimeout: If the provider call times out
        """
