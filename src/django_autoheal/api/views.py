from __future__ import annotations

import logging
from typing import Any

from django.http import JsonResponse
from django.utils import timezone
from django.views.decorators.http import require_GET

from django_autoheal.exceptions import StoreUnavailable
from django_autoheal.models import RetryAttempt
from django_autoheal.models import WebhookEvent
from django_autoheal.webhooks.router import get_router

from .auth import require_api_auth

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LIMIT = 10


def _isoformat(value) -> str | None:
    return value.isoformat() if value else None


def serialize_attempt(attempt: RetryAttempt) -> dict[str, Any]:
    """Serialize a RetryAttempt model to a dictionary."""
    return {
        "commit_sha": attempt.commit_sha,
        "repo": f"{attempt.repo_owner}/{attempt.repo_name}",
        "workflow_run_id": attempt.workflow_run_id,
        "attempt_count": attempt.attempt_count,
        "status": attempt.status,
        "last_error": attempt.last_error,
        "last_attempt_at": _isoformat(attempt.last_attempt_at),
        "updated_at": _isoformat(attempt.updated_at),
    }


def serialize_webhook_event(event: WebhookEvent) -> dict[str, Any]:
    return {
        "event_type": event.event_type,
        "action": event.action,
        "repo": (
            f"{event.repo_owner}/{event.repo_name}"
            if event.repo_name
            else event.repo_owner
        ),
        "processed": event.processed,
        "error": event.error,
        "created_at": _isoformat(event.created_at),
    }


@require_GET
def health(request) -> JsonResponse:
    """
    Liveness check including database reachability.

    Returns:
        JsonResponse with "healthy", or 500 with the database error.
    """
    try:
        get_router().store.ping()
    except StoreUnavailable as e:
        return JsonResponse(
            {"status": "unhealthy", "error": str(e)},
            status=500,
        )
    return JsonResponse(
        {"status": "healthy", "timestamp": timezone.now().isoformat()}
    )


@require_GET
@require_api_auth
def status(request) -> JsonResponse:
    """
    Report active heal attempts and recent webhook deliveries.

    Query parameters:
        - limit: Maximum number of webhook events (default 10)

    Returns:
        JsonResponse with attempts and recent events, or 500 when the
        store is unavailable.
    """
    try:
        limit = int(request.GET.get("limit", DEFAULT_EVENT_LIMIT))
    except (TypeError, ValueError):
        limit = DEFAULT_EVENT_LIMIT

    store = get_router().store
    try:
        attempts = store.active_attempts()
        events = store.recent_webhook_events(limit=limit)
    except StoreUnavailable as e:
        return JsonResponse(
            {"status": "error", "error": str(e)},
            status=500,
        )

    return JsonResponse(
        {
            "status": "running",
            "timestamp": timezone.now().isoformat(),
            "active_auto_heal_attempts": len(attempts),
            "attempts": [serialize_attempt(a) for a in attempts],
            "recent_webhook_events": [
                serialize_webhook_event(e) for e in events
            ],
        }
    )
