from __future__ import annotations

from pathlib import Path

from django.conf import settings

DEFAULT_MAX_RETRIES = 10
DEFAULT_MIN_CONFIDENCE = 0.5
DEFAULT_LLM_PROVIDER = "anthropic"
DEFAULT_WORKSPACE_ROOT = "/tmp/autoheal-repos"
DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_WEBHOOK_PATH = "/autoheal/webhook/"
DEFAULT_MAX_PAYLOAD_SIZE = 5 * 1024 * 1024

# Timeouts in seconds
DEFAULT_GIT_TIMEOUT = 120
DEFAULT_GITHUB_TIMEOUT = 30
DEFAULT_LLM_TIMEOUT = 120
DEFAULT_EXECUTION_TIMEOUT = 900
DEFAULT_SHUTDOWN_TIMEOUT = 30

DEFAULT_BACKOFF_BASE_SECONDS = 0
DEFAULT_BACKOFF_MAX_SECONDS = 30 * 60
DEFAULT_DISPATCH_WORKERS = 4

LLM_PROVIDERS = ("anthropic", "openai")


def get_max_retries() -> int:
    """Get the maximum number of heal attempts per commit."""
    return getattr(settings, "AUTOHEAL_MAX_RETRIES", DEFAULT_MAX_RETRIES)


def get_min_confidence() -> float:
    return getattr(
        settings,
        "AUTOHEAL_MIN_CONFIDENCE",
        DEFAULT_MIN_CONFIDENCE,
    )


def is_auto_apply_enabled() -> bool:
    """Check if healed fixes are committed and pushed automatically."""
    return getattr(settings, "AUTOHEAL_AUTO_APPLY", True)


def is_dry_run() -> bool:
    return getattr(settings, "AUTOHEAL_DRY_RUN", False)


def get_llm_provider() -> str:
    return getattr(settings, "AUTOHEAL_LLM_PROVIDER", DEFAULT_LLM_PROVIDER)


def get_workspace_root() -> Path:
    """Get the directory holding repository checkouts."""
    return Path(
        getattr(settings, "AUTOHEAL_WORKSPACE_ROOT", DEFAULT_WORKSPACE_ROOT)
    )


def get_backoff_base_seconds() -> int:
    return getattr(
        settings,
        "AUTOHEAL_BACKOFF_BASE_SECONDS",
        DEFAULT_BACKOFF_BASE_SECONDS,
    )


def get_backoff_max_seconds() -> int:
    return getattr(
        settings,
        "AUTOHEAL_BACKOFF_MAX_SECONDS",
        DEFAULT_BACKOFF_MAX_SECONDS,
    )


def get_git_timeout() -> int:
    return getattr(settings, "AUTOHEAL_GIT_TIMEOUT", DEFAULT_GIT_TIMEOUT)


def get_github_timeout() -> int:
    return getattr(settings, "AUTOHEAL_GITHUB_TIMEOUT", DEFAULT_GITHUB_TIMEOUT)


def get_llm_timeout() -> int:
    return getattr(settings, "AUTOHEAL_LLM_TIMEOUT", DEFAULT_LLM_TIMEOUT)


def get_execution_timeout() -> int:
    """Get the whole-run execution timeout in seconds (0 disables)."""
    return getattr(
        settings,
        "AUTOHEAL_EXECUTION_TIMEOUT",
        DEFAULT_EXECUTION_TIMEOUT,
    )


def get_webhook_secret() -> str | None:
    return getattr(settings, "GITHUB_WEBHOOK_SECRET", None)


def get_max_payload_size() -> int:
    return getattr(
        settings,
        "AUTOHEAL_MAX_PAYLOAD_SIZE",
        DEFAULT_MAX_PAYLOAD_SIZE,
    )


def is_async_dispatch_enabled() -> bool:
    """Check if webhook handling runs after the delivery is acknowledged."""
    return getattr(settings, "AUTOHEAL_ASYNC_DISPATCH", True)


def get_dispatch_workers() -> int:
    return getattr(
        settings,
        "AUTOHEAL_DISPATCH_WORKERS",
        DEFAULT_DISPATCH_WORKERS,
    )


def get_shutdown_timeout() -> int:
    return getattr(
        settings,
        "AUTOHEAL_SHUTDOWN_TIMEOUT",
        DEFAULT_SHUTDOWN_TIMEOUT,
    )


def get_webhook_path() -> str:
    return getattr(settings, "AUTOHEAL_WEBHOOK_PATH", DEFAULT_WEBHOOK_PATH)


def get_webhook_rate_limit() -> str | None:
    """Get the django-ratelimit rate for the webhook view (None disables)."""
    return getattr(settings, "AUTOHEAL_WEBHOOK_RATE_LIMIT", None)


def is_api_auth_required() -> bool:
    return getattr(settings, "AUTOHEAL_API_AUTH_REQUIRED", True)


def get_api_key() -> str | None:
    return getattr(settings, "AUTOHEAL_API_KEY", None)
