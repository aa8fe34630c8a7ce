from __future__ import annotations


class AutoHealException(Exception):
    """Base exception for django-autoheal errors."""

    pass


class ConfigurationError(AutoHealException):
    """A collaborator is selected but its credentials are missing."""

    pass


class SignatureVerificationError(AutoHealException):
    """Raised when a webhook signature does not match the shared secret."""

    pass


class InvalidPayloadError(AutoHealException):
    """Raised when a verified webhook body cannot be parsed."""

    pass


class StoreUnavailable(AutoHealException):
    """
    Raised when the retry state store cannot be read or written.

    Callers must abort the current orchestration run: without durable
    state no attempt counter mutation can be trusted.
    """

    pass


class MaxRetriesExceeded(AutoHealException):
    """The retry ceiling for a commit has been reached."""

    def __init__(self, commit_sha: str, attempt_count: int) -> None:
        super().__init__(
            f"Max retries reached for {commit_sha[:7]} "
            f"({attempt_count} attempts)"
        )
        self.commit_sha = commit_sha
        self.attempt_count = attempt_count


class FixGateError(AutoHealException):
    """A fix suggestion was rejected before touching the working tree."""

    pass


class NoFixAvailable(FixGateError):
    """The fix suggestion contained no file changes."""

    pass


class LowConfidence(FixGateError):
    """The fix suggestion confidence is below the configured threshold."""

    def __init__(self, confidence: float, threshold: float) -> None:
        super().__init__(
            f"Low confidence ({round(confidence * 100)}%), "
            f"threshold is {round(threshold * 100)}%"
        )
        self.confidence = confidence
        self.threshold = threshold


class ApplyError(AutoHealException):
    """A single file change could not be applied."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class GitError(AutoHealException):
    """A git subprocess failed while committing or pushing a fix."""

    pass


class CollaboratorError(AutoHealException):
    """An external collaborator (CI host or fix suggestion) failed."""

    pass


class GitHubAPIError(CollaboratorError):
    """
    Raised when the GitHub API returns an error response.

    Attributes:
        status_code: HTTP status code of the response (if any)
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FixSuggestionError(CollaboratorError):
    """The fix-suggestion provider failed or returned an invalid answer."""

    pass


class CollaboratorTimeout(CollaboratorError):
    """
    Raised when a call to an external collaborator times out.

    Attributes:
        collaborator: Name of the collaborator that timed out
        timeout_seconds: The timeout that was exceeded
    """

    def __init__(
        self,
        collaborator: str,
        timeout_seconds: float | None = None,
    ) -> None:
        message = f"{collaborator} call timed out"
        if timeout_seconds is not None:
            message = f"{message} after {timeout_seconds}s"
        super().__init__(message)
        self.collaborator = collaborator
        self.timeout_seconds = timeout_seconds


class ExecutionTimeoutError(AutoHealException):
    """
    Raised when an orchestration run exceeds the configured timeout.

    This is a cooperative timeout using threading. It is checked between
    orchestration steps and will not interrupt blocking I/O operations;
    each collaborator enforces its own I/O timeout for that.

    Attributes:
        timeout_seconds: The timeout duration that was exceeded
        commit_sha: The commit being healed (if available)
    """

    def __init__(
        self,
        message: str,
        timeout_seconds: int | None = None,
        commit_sha: str | None = None,
    ) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds
        self.commit_sha = commit_sha
