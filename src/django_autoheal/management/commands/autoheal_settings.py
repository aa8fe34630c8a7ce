from __future__ import annotations

from typing import Any

from django.conf import settings
from django.core.management.base import BaseCommand

from django_autoheal import conf


def _setting(
    name: str,
    default: Any = None,
    required: bool = False,
    secret: bool = False,
) -> dict[str, Any]:
    return {
        "name": name,
        "required": required,
        "default": default,
        "secret": secret,
    }


_SETTINGS = [
    _setting("GITHUB_WEBHOOK_SECRET", required=True, secret=True),
    _setting("GITHUB_APP_ID", required=True),
    _setting("GITHUB_PRIVATE_KEY", required=True, secret=True),
    _setting("GITHUB_API_URL", conf.DEFAULT_GITHUB_API_URL),
    _setting("AUTOHEAL_LLM_PROVIDER", conf.DEFAULT_LLM_PROVIDER),
    _setting("ANTHROPIC_API_KEY", secret=True),
    _setting("OPENAI_API_KEY", secret=True),
    _setting("AUTOHEAL_ANTHROPIC_MODEL"),
    _setting("AUTOHEAL_OPENAI_MODEL"),
    _setting("AUTOHEAL_MAX_RETRIES", conf.DEFAULT_MAX_RETRIES),
    _setting("AUTOHEAL_MIN_CONFIDENCE", conf.DEFAULT_MIN_CONFIDENCE),
    _setting("AUTOHEAL_AUTO_APPLY", True),
    _setting("AUTOHEAL_DRY_RUN", False),
    _setting(
        "AUTOHEAL_BACKOFF_BASE_SECONDS",
        conf.DEFAULT_BACKOFF_BASE_SECONDS,
    ),
    _setting("AUTOHEAL_BACKOFF_MAX_SECONDS", conf.DEFAULT_BACKOFF_MAX_SECONDS),
    _setting("AUTOHEAL_WORKSPACE_ROOT", conf.DEFAULT_WORKSPACE_ROOT),
    _setting("AUTOHEAL_GIT_REMOTE"),
    _setting("AUTOHEAL_GIT_BRANCH"),
    _setting("AUTOHEAL_GIT_AUTHOR_NAME"),
    _setting("AUTOHEAL_GIT_AUTHOR_EMAIL"),
    _setting("AUTOHEAL_GIT_TIMEOUT", conf.DEFAULT_GIT_TIMEOUT),
    _setting("AUTOHEAL_GITHUB_TIMEOUT", conf.DEFAULT_GITHUB_TIMEOUT),
    _setting("AUTOHEAL_LLM_TIMEOUT", conf.DEFAULT_LLM_TIMEOUT),
    _setting("AUTOHEAL_EXECUTION_TIMEOUT", conf.DEFAULT_EXECUTION_TIMEOUT),
    _setting("AUTOHEAL_WEBHOOK_PATH", conf.DEFAULT_WEBHOOK_PATH),
    _setting("AUTOHEAL_WEBHOOK_RATE_LIMIT"),
    _setting("AUTOHEAL_MAX_PAYLOAD_SIZE", conf.DEFAULT_MAX_PAYLOAD_SIZE),
    _setting("AUTOHEAL_ASYNC_DISPATCH", True),
    _setting("AUTOHEAL_DISPATCH_WORKERS", conf.DEFAULT_DISPATCH_WORKERS),
    _setting("AUTOHEAL_SHUTDOWN_TIMEOUT", conf.DEFAULT_SHUTDOWN_TIMEOUT),
    _setting("AUTOHEAL_API_AUTH_REQUIRED", True),
    _setting("AUTOHEAL_API_KEY", secret=True),
]


def _format_value(value: Any, secret: bool) -> str:
    if value is None:
        return "unset"

    text = str(value)
    if not secret:
        return text

    if len(text) <= 8:
        return "*" * len(text)

    return f"{text[:4]}...{text[-4:]}"


class Command(BaseCommand):
    help = "List django-autoheal settings and current values"

    def handle(self, *args, **options) -> None:
        self.stdout.write("Django Autoheal settings")
        self.stdout.write("")

        sentinel = object()

        for item in _SETTINGS:
            name = item["name"]
            required = "required" if item["required"] else "optional"
            default = item["default"]
            default_text = "-" if default is None else str(default)
            current = getattr(settings, name, sentinel)
            current_text = "unset"
            if current is not sentinel:
                current_text = _format_value(current, item["secret"])

            self.stdout.write(name)
            self.stdout.write(f"  Required: {required}")
            self.stdout.write(f"  Default: {default_text}")
            self.stdout.write(f"  Current: {current_text}")
            self.stdout.write("")
