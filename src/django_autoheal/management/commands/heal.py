from __future__ import annotations

from django.core.management.base import BaseCommand
from django.core.management.base import CommandError

from django_autoheal.exceptions import AutoHealException
from django_autoheal.orchestrator import HealOutcome
from django_autoheal.webhooks.router import get_router


class Command(BaseCommand):
    help = "Manually run an auto-heal attempt for a commit"

    def add_arguments(self, parser) -> None:
        parser.add_argument("owner", help="Repository owner")
        parser.add_argument("repo", help="Repository name")
        parser.add_argument("commit", help="Commit SHA to heal")
        parser.add_argument(
            "error_message",
            help="Error output describing the failure",
        )
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would change without writing or committing",
        )

    def handle(self, *args, **options) -> None:
        owner = options["owner"]
        repo = options["repo"]
        commit = options["commit"]

        self.stdout.write(
            f"Manual auto-heal for {owner}/{repo}@{commit[:7]}"
        )

        orchestrator = get_router().orchestrator
        try:
            result = orchestrator.manual_trigger(
                owner,
                repo,
                commit,
                options["error_message"],
                dry_run=options["dry_run"],
            )
        except AutoHealException as e:
            raise CommandError(f"Auto-heal failed: {e}") from e

        if result.fix is not None:
            self.stdout.write(f"Root cause: {result.fix.root_cause}")
            self.stdout.write(
                f"Confidence: {round(result.fix.confidence * 100)}%"
            )
        if result.apply_result is not None and result.apply_result.summary():
            self.stdout.write(result.apply_result.summary())

        if result.failed:
            raise CommandError(
                f"Auto-heal {result.outcome.value}: {result.error or '-'}"
            )

        if result.outcome == HealOutcome.DRY_RUN:
            self.stdout.write(
                self.style.WARNING("Dry run complete. No changes were made.")
            )
        else:
            self.stdout.write(self.style.SUCCESS("Fix applied"))
