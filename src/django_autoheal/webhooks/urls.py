from __future__ import annotations

from django.urls import path

from .views import github_webhook

app_name = "django_autoheal_webhooks"

urlpatterns = [
    path("", github_webhook, name="github_webhook"),
]
