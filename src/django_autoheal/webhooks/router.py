from __future__ import annotations

import json
import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from typing import Any
from typing import Callable

from django_autoheal.exceptions import InvalidPayloadError
from django_autoheal.models import WebhookEvent
from django_autoheal.orchestrator import AutoHealOrchestrator
from django_autoheal.store import RetryStateStore
from django_autoheal.webhooks.handlers import register_defaults
from django_autoheal.webhooks.receiver import GitHubWebhookReceiver
from django_autoheal.webhooks.receiver import get_receiver

logger = logging.getLogger(__name__)


@dataclass
class WebhookDelivery:
    """A verified, parsed webhook delivery."""

    event_type: str
    action: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def repo_owner(self) -> str | None:
        repository = self.payload.get("repository") or {}
        owner = repository.get("owner") or {}
        if owner.get("login"):
            return owner["login"]
        account = (self.payload.get("installation") or {}).get("account")
        if account:
            return account.get("login") or account.get("name")
        return None

    @property
    def repo_name(self) -> str | None:
        return (self.payload.get("repository") or {}).get("name")


Handler = Callable[[WebhookDelivery, AutoHealOrchestrator], None]
Summarizer = Callable[[dict[str, Any]], dict[str, Any]]


class WebhookRouter:
    """
    Verifies, logs and dispatches GitHub webhook deliveries.

    Handling is split in two halves so the HTTP view can acknowledge a
    delivery before the (slow) handler runs:

    - :meth:`receive` checks the signature and parses the body. It has
      no side effects, so a rejected delivery leaves no trace.
    - :meth:`process` writes a ``WebhookEvent`` row, runs the handler
      registered for the event type and always finalizes the row.

    Example:
        router = WebhookRouter(store, orchestrator)

        @router.on("deployment_status")
        def on_deployment(delivery, orchestrator):
            ...
    """

    def __init__(
        self,
        store: RetryStateStore,
        orchestrator: AutoHealOrchestrator,
        receiver: GitHubWebhookReceiver | None = None,
        default_handlers: bool = True,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self._receiver = receiver
        self._handlers: dict[str, Handler] = {}
        self._summarizers: dict[str, Summarizer] = {}
        if default_handlers:
            register_defaults(self)

    @property
    def receiver(self) -> GitHubWebhookReceiver:
        if self._receiver is None:
            self._receiver = get_receiver()
        return self._receiver

    def register(
        self,
        event_type: str,
        handler: Handler,
        summarize: Summarizer | None = None,
    ) -> None:
        """
        Register the handler for an event type, replacing any previous one.

        Args:
            event_type: The X-GitHub-Event value
            handler: Called with the delivery and the orchestrator
            summarize: Builds the stored payload summary
        """
        self._handlers[event_type] = handler
        if summarize is not None:
            self._summarizers[event_type] = summarize
        logger.debug("Registered webhook handler: event=%s", event_type)

    def on(
        self,
        event_type: str,
        summarize: Summarizer | None = None,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(event_type, handler, summarize)
            return handler

        return decorator

    def has_handler(self, event_type: str) -> bool:
        return event_type in self._handlers

    def receive(
        self,
        event_type: str,
        signature: str,
        raw_body: bytes,
    ) -> WebhookDelivery:
        """
        Verify and parse a delivery.

        Raises:
            SignatureVerificationError: If the signature is invalid
            InvalidPayloadError: If the body is not a JSON object
        """
        self.receiver.verify(signature, raw_body)

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidPayloadError(f"Invalid JSON payload: {e}") from e
        if not isinstance(payload, dict):
            raise InvalidPayloadError("Webhook payload must be a JSON object")

        action = payload.get("action")
        return WebhookDelivery(
            event_type=event_type,
            action=action if isinstance(action, str) else None,
            payload=payload,
        )

    def summarize(self, delivery: WebhookDelivery) -> str | None:
        summarizer = self._summarizers.get(delivery.event_type)
        if summarizer is None:
            return None
        try:
            return json.dumps(summarizer(delivery.payload))
        except (AttributeError, KeyError, TypeError) as e:
            logger.warning(
                "Could not summarize payload: event=%s, error=%s",
                delivery.event_type,
                e,
            )
            return None

    @contextmanager
    def _logged_event(
        self,
        delivery: WebhookDelivery,
    ) -> Generator[WebhookEvent]:
        event = self.store.log_webhook_event(
            delivery.event_type,
            action=delivery.action,
            repo_owner=delivery.repo_owner,
            repo_name=delivery.repo_name,
            payload_summary=self.summarize(delivery),
        )
        try:
            yield event
        except Exception as e:
            self.store.mark_webhook_processed(event, error=str(e))
            raise
        else:
            self.store.mark_webhook_processed(event)

    def process(self, delivery: WebhookDelivery) -> None:
        """
        Log a delivery and run its handler.

        Handler errors propagate after the event row is finalized.
        """
        with self._logged_event(delivery):
            handler = self._handlers.get(delivery.event_type)
            if handler is None:
                logger.info(
                    "Ignoring unhandled webhook event: event=%s, action=%s",
                    delivery.event_type,
                    delivery.action,
                )
                return
            handler(delivery, self.orchestrator)

    def handle(
        self,
        event_type: str,
        signature: str,
        raw_body: bytes,
    ) -> None:
        """Verify, parse, log and dispatch a delivery in one call."""
        delivery = self.receive(event_type, signature, raw_body)
        self.process(delivery)


_router: WebhookRouter | None = None
_router_lock = threading.Lock()


def get_router() -> WebhookRouter:
    """
    Get the process-wide router.

    The first call builds the object graph once: one retry store shared by
    the orchestrator and the router.
    """
    global _router

    if _router is None:
        with _router_lock:
            if _router is None:
                store = RetryStateStore()
                orchestrator = AutoHealOrchestrator(store)
                _router = WebhookRouter(store, orchestrator)

    return _router


def reset_router() -> None:
    """Drop the process-wide router. Useful for testing."""
    global _router

    with _router_lock:
        _router = None
