from __future__ import annotations

from django.core.management.base import BaseCommand
from django.core.management.base import CommandError

from django_autoheal.webhooks.router import get_router


class Command(BaseCommand):
    help = "Reset the auto-heal attempt counter of a commit"

    def add_arguments(self, parser) -> None:
        parser.add_argument("owner", help="Repository owner")
        parser.add_argument("repo", help="Repository name")
        parser.add_argument("commit", help="Commit SHA")

    def handle(self, *args, **options) -> None:
        owner = options["owner"]
        repo = options["repo"]
        commit = options["commit"]

        store = get_router().store
        if not store.reset_attempts(commit, owner, repo):
            raise CommandError(
                f"No auto-heal attempt for {owner}/{repo}@{commit[:7]}"
            )
        self.stdout.write(
            self.style.SUCCESS(
                f"Reset auto-heal attempts for {owner}/{repo}@{commit[:7]}"
            )
        )
