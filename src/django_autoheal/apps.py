from __future__ import annotations

import logging

from django.apps import AppConfig
from django.conf import settings
from django.core.checks import Error
from django.core.checks import Warning
from django.core.checks import register

from django_autoheal.conf import LLM_PROVIDERS
from django_autoheal.conf import get_llm_provider
from django_autoheal.conf import get_max_retries
from django_autoheal.conf import get_webhook_path
from django_autoheal.conf import get_webhook_secret
from django_autoheal.conf import is_async_dispatch_enabled

logger = logging.getLogger(__name__)

MAX_RETRIES_RANGE = (1, 100)

PROVIDER_KEY_SETTINGS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def _is_webhook_path_valid(path: str) -> bool:
    return path.startswith("/") and path.endswith("/")


def _is_max_retries_valid(value: object) -> bool:
    if not isinstance(value, int) or isinstance(value, bool):
        return False
    low, high = MAX_RETRIES_RANGE
    return low <= value <= high


def _has_app_credentials() -> bool:
    return bool(
        getattr(settings, "GITHUB_APP_ID", None)
        and getattr(settings, "GITHUB_PRIVATE_KEY", None)
    )


def _missing_provider_key() -> str | None:
    """Return the API key setting the selected provider lacks, if any."""
    key_setting = PROVIDER_KEY_SETTINGS.get(get_llm_provider())
    if key_setting and not getattr(settings, key_setting, None):
        return key_setting
    return None


class DjangoAutoHealConfig(AppConfig):
    """Django app configuration for django-autoheal."""

    name = "django_autoheal"
    verbose_name = "Django Autoheal"
    default_auto_field = (  # type: ignore[assignment]
        "django.db.models.BigAutoField"
    )

    def ready(self) -> None:
        """
        Validate settings and install the shutdown handler.

        Misconfiguration is only logged here; ``manage.py check`` reports
        the same problems as system check messages.
        """
        self._validate_configuration()
        self._setup_shutdown_handlers()

    def _validate_configuration(self) -> None:
        if not get_webhook_secret():
            logger.warning(
                "GITHUB_WEBHOOK_SECRET is not configured. "
                "Webhook deliveries will be rejected."
            )

        if not _has_app_credentials():
            logger.warning(
                "GITHUB_APP_ID or GITHUB_PRIVATE_KEY is not configured. "
                "Failed runs cannot be inspected."
            )

        provider = get_llm_provider()
        if provider not in LLM_PROVIDERS:
            logger.warning(
                "AUTOHEAL_LLM_PROVIDER %r is not one of: %s",
                provider,
                ", ".join(LLM_PROVIDERS),
            )
        else:
            missing_key = _missing_provider_key()
            if missing_key:
                logger.warning(
                    "AUTOHEAL_LLM_PROVIDER is %r but %s is not set.",
                    provider,
                    missing_key,
                )

        if not _is_max_retries_valid(get_max_retries()):
            logger.warning(
                "AUTOHEAL_MAX_RETRIES should be an integer between %d "
                "and %d.",
                *MAX_RETRIES_RANGE,
            )

        if not _is_webhook_path_valid(get_webhook_path()):
            logger.warning(
                "AUTOHEAL_WEBHOOK_PATH should start and end with '/'."
            )

    def _setup_shutdown_handlers(self) -> None:
        if not is_async_dispatch_enabled():
            return

        from django_autoheal.dispatch import get_dispatcher

        get_dispatcher().install_signal_handlers()


@register()
def check_autoheal_settings(app_configs, **kwargs):
    """
    Django system check for django-autoheal configuration.

    Returns warnings and errors for missing or invalid settings.
    """
    errors = []

    if not get_webhook_secret():
        errors.append(
            Warning(
                "GITHUB_WEBHOOK_SECRET is not configured",
                hint=(
                    "Set GITHUB_WEBHOOK_SECRET to the secret configured on "
                    "the GitHub App webhook."
                ),
                id="django_autoheal.W001",
            )
        )

    if not _has_app_credentials():
        errors.append(
            Warning(
                "GitHub App credentials are not configured",
                hint="Set GITHUB_APP_ID and GITHUB_PRIVATE_KEY.",
                id="django_autoheal.W002",
            )
        )

    provider = get_llm_provider()
    if provider not in LLM_PROVIDERS:
        errors.append(
            Error(
                f"AUTOHEAL_LLM_PROVIDER {provider!r} is not supported",
                hint=f"Use one of: {', '.join(LLM_PROVIDERS)}.",
                id="django_autoheal.E001",
            )
        )
    else:
        missing_key = _missing_provider_key()
        if missing_key:
            errors.append(
                Warning(
                    f"{missing_key} is not configured",
                    hint=(
                        f"AUTOHEAL_LLM_PROVIDER is {provider!r}; set "
                        f"{missing_key} to request fixes."
                    ),
                    id="django_autoheal.W003",
                )
            )

    if not _is_max_retries_valid(get_max_retries()):
        errors.append(
            Error(
                "AUTOHEAL_MAX_RETRIES is out of range",
                hint=(
                    "Use an integer between %d and %d." % MAX_RETRIES_RANGE
                ),
                id="django_autoheal.E002",
            )
        )

    if not _is_webhook_path_valid(get_webhook_path()):
        errors.append(
            Error(
                "AUTOHEAL_WEBHOOK_PATH must start and end with '/'",
                hint=(
                    "Ensure AUTOHEAL_WEBHOOK_PATH is like "
                    "'/autoheal/webhook/'."
                ),
                id="django_autoheal.E003",
            )
        )

    return errors
