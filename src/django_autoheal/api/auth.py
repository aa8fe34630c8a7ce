from __future__ import annotations

import functools
import hmac
import logging
from typing import Any
from typing import Callable

from django.http import HttpRequest
from django.http import JsonResponse

from django_autoheal.conf import get_api_key
from django_autoheal.conf import is_api_auth_required

logger = logging.getLogger(__name__)

AUTH_SCHEMES = ("Bearer ", "Api-Key ")


def _provided_api_key(request: HttpRequest) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    for scheme in AUTH_SCHEMES:
        if auth_header.startswith(scheme):
            return auth_header[len(scheme) :]  # noqa: E203
    return None


def _authenticate_api_key(request: HttpRequest) -> bool:
    """
    Authenticate using an API key from the Authorization header.

    Expects header format: "Bearer <api_key>" or "Api-Key <api_key>"
    """
    api_key = get_api_key()
    provided = _provided_api_key(request)
    if not api_key or provided is None:
        return False
    return hmac.compare_digest(provided.encode(), api_key.encode())


def _authenticate_django_user(request: HttpRequest) -> bool:
    user = getattr(request, "user", None)
    return user is not None and user.is_authenticated


def require_api_auth(view_func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Decorator to require authentication for operator endpoints.

    A request passes with a valid ``AUTOHEAL_API_KEY`` in the
    Authorization header or an authenticated Django user. Setting
    ``AUTOHEAL_API_AUTH_REQUIRED = False`` disables the check.

    Returns:
        401 response if authentication fails, otherwise calls view
    """

    @functools.wraps(view_func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> Any:
        if not is_api_auth_required():
            return view_func(request, *args, **kwargs)

        if _authenticate_api_key(request) or _authenticate_django_user(
            request
        ):
            return view_func(request, *args, **kwargs)

        logger.warning(
            "API authentication failed for %s %s from %s",
            request.method,
            request.path,
            request.META.get("REMOTE_ADDR", "unknown"),
        )
        return JsonResponse(
            {"error": "Authentication required"},
            status=401,
        )

    return wrapper
