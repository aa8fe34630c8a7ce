from __future__ import annotations

from django.urls import path

from .views import health
from .views import status

app_name = "django_autoheal_api"

urlpatterns = [
    path("health/", health, name="health"),
    path("status/", status, name="status"),
]
