from __future__ import annotations

from django.core.management.base import BaseCommand
from django.core.management.base import CommandError

from django_autoheal.exceptions import StoreUnavailable
from django_autoheal.webhooks.router import get_router


class Command(BaseCommand):
    help = "Show active auto-heal attempts and recent webhook events"

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--limit",
            type=int,
            default=10,
            help="Number of recent webhook events to show (default 10)",
        )

    def handle(self, *args, **options) -> None:
        store = get_router().store
        try:
            attempts = store.active_attempts()
            events = store.recent_webhook_events(limit=options["limit"])
        except StoreUnavailable as e:
            raise CommandError(str(e)) from e

        self.stdout.write(f"Active auto-heal attempts: {len(attempts)}")
        for attempt in attempts:
            self.stdout.write(
                f"  {attempt.repo_owner}/{attempt.repo_name}"
                f"@{attempt.commit_sha[:7]} "
                f"status={attempt.status} attempts={attempt.attempt_count}"
            )
            if attempt.last_error:
                self.stdout.write(f"    last error: {attempt.last_error}")

        self.stdout.write("")
        self.stdout.write(f"Recent webhook events: {len(events)}")
        for event in events:
            state = "processed" if event.processed else "pending"
            if event.error:
                state = f"error: {event.error}"
            self.stdout.write(
                f"  {event.created_at:%Y-%m-%d %H:%M:%S} "
                f"{event.event_type}.{event.action or '-'} "
                f"{event.repo_owner or '-'}/{event.repo_name or '-'} "
                f"{state}"
            )
