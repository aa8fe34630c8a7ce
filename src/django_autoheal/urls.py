from __future__ import annotations

from django.urls import include
from django.urls import path

from django_autoheal.conf import get_webhook_path

urlpatterns = [
    path(
        get_webhook_path().lstrip("/"),
        include("django_autoheal.webhooks.urls"),
    ),
    path("", include("django_autoheal.api.urls")),
]
