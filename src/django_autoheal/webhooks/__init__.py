from __future__ import annotations

from django_autoheal.webhooks.router import WebhookDelivery
from django_autoheal.webhooks.router import WebhookRouter
from django_autoheal.webhooks.router import get_router

__all__ = ["WebhookDelivery", "WebhookRouter", "get_router"]
