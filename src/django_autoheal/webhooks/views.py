from __future__ import annotations

import logging

from django.http import HttpRequest
from django.http import HttpResponse
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from django_ratelimit.decorators import ratelimit

from django_autoheal.conf import get_max_payload_size
from django_autoheal.conf import get_webhook_rate_limit
from django_autoheal.conf import is_async_dispatch_enabled
from django_autoheal.dispatch import get_dispatcher
from django_autoheal.exceptions import ConfigurationError
from django_autoheal.exceptions import InvalidPayloadError
from django_autoheal.exceptions import SignatureVerificationError
from django_autoheal.webhooks.router import get_router

logger = logging.getLogger(__name__)


def _rate_limit_rate(group: str, request: HttpRequest) -> str | None:
    return get_webhook_rate_limit()


def _apply_rate_limit(view_func):
    if not get_webhook_rate_limit():
        return view_func
    return ratelimit(key="ip", rate=_rate_limit_rate, block=True)(view_func)


def _shutting_down_response() -> JsonResponse:
    return JsonResponse(
        {"error": "Service is shutting down"},
        status=503,
    )


def _github_webhook_impl(request: HttpRequest) -> HttpResponse:
    """
    Webhook endpoint for GitHub App deliveries.

    The delivery is verified and parsed synchronously. Handling then runs
    on the background dispatcher (202) or inline (200/500) depending on
    ``AUTOHEAL_ASYNC_DISPATCH``.

    Args:
        request: The Django HTTP request

    Returns:
        JsonResponse with the delivery status
    """
    # 1. Required headers
    event_type = request.headers.get("X-GitHub-Event")
    signature = request.headers.get("X-Hub-Signature-256")
    if not event_type or not signature:
        logger.warning("Webhook delivery missing GitHub headers")
        return JsonResponse(
            {"error": "Missing X-GitHub-Event or X-Hub-Signature-256 header"},
            status=400,
        )

    # 2. Enforce payload size limit
    max_payload_size = get_max_payload_size()
    body = request.body
    if len(body) > max_payload_size:
        logger.warning(
            "Payload too large: event=%s, size=%d, limit=%d",
            event_type,
            len(body),
            max_payload_size,
        )
        return JsonResponse(
            {"error": "Payload too large"},
            status=413,
        )

    # 3. Verify signature and parse
    router = get_router()
    try:
        delivery = router.receive(event_type, signature, body)
    except SignatureVerificationError:
        logger.warning(
            "GitHub signature verification failed for event %s",
            event_type,
        )
        return JsonResponse(
            {"error": "Signature verification failed"},
            status=401,
        )
    except InvalidPayloadError:
        logger.exception("Failed to parse webhook payload")
        return JsonResponse(
            {"error": "Invalid JSON payload"},
            status=400,
        )
    except ConfigurationError:
        logger.exception("Webhook receiver is not configured")
        return JsonResponse(
            {"error": "Webhook receiver is not configured"},
            status=500,
        )

    # 4. Reject during shutdown
    dispatcher = get_dispatcher()
    if dispatcher.is_shutting_down:
        logger.info("Rejecting delivery during shutdown: event=%s", event_type)
        return _shutting_down_response()

    delivery_id = request.headers.get("X-GitHub-Delivery", "-")

    # 5. Dispatch
    if is_async_dispatch_enabled():
        future = dispatcher.submit(
            f"{event_type}:{delivery_id}",
            router.process,
            delivery,
        )
        if future is None:
            return _shutting_down_response()
        return JsonResponse({"status": "accepted"}, status=202)

    try:
        router.process(delivery)
    except Exception as e:
        logger.exception(
            "Webhook handling failed: event=%s, delivery=%s",
            event_type,
            delivery_id,
        )
        return JsonResponse(
            {"status": "error", "error": str(e)},
            status=500,
        )

    return JsonResponse({"status": "ok"})


def _github_webhook_inner(request: HttpRequest) -> HttpResponse:
    return _github_webhook_impl(request)


github_webhook = _apply_rate_limit(
    csrf_exempt(
        require_POST(_github_webhook_inner),
    )
)  # type: ignore[assignment]

github_webhook_raw = _github_webhook_inner
