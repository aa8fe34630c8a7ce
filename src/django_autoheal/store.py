from __future__ import annotations

import functools
import logging
from typing import Any
from typing import Callable
from typing import TypeVar

from django.db import DEFAULT_DB_ALIAS
from django.db import connections
from django.db import transaction
from django.db.models import F
from django.db.utils import DatabaseError
from django.utils import timezone

from django_autoheal.exceptions import StoreUnavailable
from django_autoheal.models import ACTIVE_STATUSES
from django_autoheal.models import AutoHealHistory
from django_autoheal.models import RetryAttempt
from django_autoheal.models import RetryAttemptStatus
from django_autoheal.models import WebhookEvent

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _store_operation(func: Callable[..., T]) -> Callable[..., T]:
    """Translate persistence failures into StoreUnavailable."""

    @functools.wraps(func)
    def wrapper(self: RetryStateStore, *args: Any, **kwargs: Any) -> T:
        try:
            return func(self, *args, **kwargs)
        except DatabaseError as e:
            logger.exception(
                "Retry state store unavailable: operation=%s, using=%s",
                func.__name__,
                self.using,
            )
            raise StoreUnavailable(
                f"Retry state store unavailable during {func.__name__}: {e}"
            ) from e

    return wrapper


class RetryStateStore:
    """
    Durable store for per-commit heal attempts and their audit trail.

    The store is the single source of truth for "how many times have we
    tried" and the only component that writes ``RetryAttempt`` rows. It
    also appends ``WebhookEvent`` and ``AutoHealHistory`` rows.

    One instance is created per process and passed by reference to every
    component that needs it. All mutations are committed before the
    method returns (autocommit or ``transaction.atomic``).

    Concurrency:
        Duplicate webhook deliveries for the same commit may run at the
        same time. The unique ``(commit_sha, repo_owner, repo_name)``
        constraint serializes row creation and :meth:`claim_attempt`
        performs "check limit, then increment" as a single conditional
        UPDATE, so concurrent callers can never both pass the limit.
    """

    def __init__(self, using: str = DEFAULT_DB_ALIAS) -> None:
        """
        Initialize the store.

        Args:
            using: Django database alias holding the auto-heal tables
        """
        self.using = using

    def _attempts(self):
        return RetryAttempt.objects.using(self.using)

    def _key(self, commit_sha: str, repo_owner: str, repo_name: str):
        return self._attempts().filter(
            commit_sha=commit_sha,
            repo_owner=repo_owner,
            repo_name=repo_name,
        )

    @_store_operation
    def ping(self) -> None:
        """Check that the database behind the store is reachable."""
        connections[self.using].ensure_connection()

    # Retry attempts

    @_store_operation
    def get(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
    ) -> RetryAttempt | None:
        return self._key(commit_sha, repo_owner, repo_name).first()

    @_store_operation
    def get_or_create(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
        workflow_run_id: int | None = None,
    ) -> RetryAttempt:
        """
        Return the attempt row for a commit, creating it if needed.

        New rows start with ``attempt_count=0`` and status ``pending``.
        Concurrent creators race on the unique constraint; Django's
        ``get_or_create`` re-reads the winner's row on IntegrityError.

        Args:
            commit_sha: The commit being healed
            repo_owner: Repository owner login
            repo_name: Repository name
            workflow_run_id: Latest pipeline run for this commit

        Returns:
            The existing or newly created RetryAttempt
        """
        attempt, created = self._attempts().get_or_create(
            commit_sha=commit_sha,
            repo_owner=repo_owner,
            repo_name=repo_name,
            defaults={
                "workflow_run_id": workflow_run_id,
                "attempt_count": 0,
                "status": RetryAttemptStatus.PENDING,
            },
        )
        if created:
            logger.info(
                "Created retry attempt: repo=%s/%s, commit=%s, run_id=%s",
                repo_owner,
                repo_name,
                commit_sha[:7],
                workflow_run_id,
            )
        elif (
            workflow_run_id is not None
            and attempt.workflow_run_id != workflow_run_id
        ):
            self._key(commit_sha, repo_owner, repo_name).update(
                workflow_run_id=workflow_run_id,
                updated_at=timezone.now(),
            )
            attempt.workflow_run_id = workflow_run_id
        return attempt

    @_store_operation
    def increment(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
    ) -> RetryAttempt:
        """
        Unconditionally count one more attempt and mark the row healing.

        Returns:
            The updated RetryAttempt

        Raises:
            RetryAttempt.DoesNotExist: If no row exists for the commit
        """
        now = timezone.now()
        with transaction.atomic(using=self.using):
            self._key(commit_sha, repo_owner, repo_name).update(
                attempt_count=F("attempt_count") + 1,
                status=RetryAttemptStatus.HEALING,
                last_attempt_at=now,
                updated_at=now,
            )
            return self._key(commit_sha, repo_owner, repo_name).get()

    @_store_operation
    def claim_attempt(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
        limit: int,
    ) -> RetryAttempt | None:
        """
        Atomically check the retry limit and start a new attempt.

        The limit check and the increment are a single conditional UPDATE,
        which only matches rows that are still active and below ``limit``.

        Args:
            commit_sha: The commit being healed
            repo_owner: Repository owner login
            repo_name: Repository name
            limit: Maximum number of attempts for the commit

        Returns:
            The updated RetryAttempt, or None if the row is terminal, at
            the limit, or missing
        """
        now = timezone.now()
        with transaction.atomic(using=self.using):
            claimed = (
                self._key(commit_sha, repo_owner, repo_name)
                .filter(
                    attempt_count__lt=limit,
                    status__in=ACTIVE_STATUSES,
                )
                .update(
                    attempt_count=F("attempt_count") + 1,
                    status=RetryAttemptStatus.HEALING,
                    last_attempt_at=now,
                    updated_at=now,
                )
            )
            if not claimed:
                return None
            return self._key(commit_sha, repo_owner, repo_name).get()

    @_store_operation
    def update(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
        *,
        status: str | None = None,
        last_error: str | None = None,
    ) -> RetryAttempt | None:
        """
        Partially update an attempt row.

        Only the provided fields are written.

        Returns:
            The updated RetryAttempt, or None if no row exists
        """
        fields: dict[str, Any] = {"updated_at": timezone.now()}
        if status is not None:
            fields["status"] = status
        if last_error is not None:
            fields["last_error"] = last_error

        self._key(commit_sha, repo_owner, repo_name).update(**fields)
        return self._key(commit_sha, repo_owner, repo_name).first()

    @_store_operation
    def is_max_retries_reached(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
        limit: int,
    ) -> bool:
        """Return True iff a stored ``attempt_count`` is at least ``limit``."""
        count = (
            self._key(commit_sha, repo_owner, repo_name)
            .values_list("attempt_count", flat=True)
            .first()
        )
        if count is None:
            return False
        return count >= limit

    @_store_operation
    def mark_exhausted(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
    ) -> None:
        self._key(commit_sha, repo_owner, repo_name).update(
            status=RetryAttemptStatus.EXHAUSTED,
            updated_at=timezone.now(),
        )

    @_store_operation
    def mark_success(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
    ) -> None:
        self._key(commit_sha, repo_owner, repo_name).update(
            status=RetryAttemptStatus.SUCCESS,
            updated_at=timezone.now(),
        )

    @_store_operation
    def reset_attempts(
        self,
        commit_sha: str,
        repo_owner: str,
        repo_name: str,
    ) -> bool:
        """
        Reset the attempt counter after manual intervention.

        Returns:
            True if a row was reset, False if none exists
        """
        updated = self._key(commit_sha, repo_owner, repo_name).update(
            attempt_count=0,
            status=RetryAttemptStatus.PENDING,
            last_error=None,
            updated_at=timezone.now(),
        )
        return bool(updated)

    @_store_operation
    def active_attempts(self) -> list[RetryAttempt]:
        """Get all pending or healing attempts."""
        return list(
            self._attempts()
            .filter(status__in=ACTIVE_STATUSES)
            .order_by("-updated_at")
        )

    # Auto-heal history

    @_store_operation
    def record_history(
        self,
        attempt: RetryAttempt,
        *,
        error_message: str | None,
        success: bool,
        duration_ms: int,
        fix_prompt: str | None = None,
        fix_applied: str | None = None,
        commit_sha_before: str | None = None,
        commit_sha_after: str | None = None,
    ) -> AutoHealHistory:
        return AutoHealHistory.objects.using(self.using).create(
            retry_attempt=attempt,
            error_message=error_message,
            fix_prompt=fix_prompt,
            fix_applied=fix_applied,
            commit_sha_before=commit_sha_before,
            commit_sha_after=commit_sha_after,
            success=success,
            duration_ms=duration_ms,
        )

    @_store_operation
    def heal_history(self, attempt: RetryAttempt) -> list[AutoHealHistory]:
        return list(
            AutoHealHistory.objects.using(self.using)
            .filter(retry_attempt=attempt)
            .order_by("-created_at", "-id")
        )

    # Webhook events

    @_store_operation
    def log_webhook_event(
        self,
        event_type: str,
        action: str | None = None,
        repo_owner: str | None = None,
        repo_name: str | None = None,
        payload_summary: str | None = None,
    ) -> WebhookEvent:
        return WebhookEvent.objects.using(self.using).create(
            event_type=event_type,
            action=action,
            repo_owner=repo_owner,
            repo_name=repo_name,
            payload_summary=payload_summary,
        )

    @_store_operation
    def mark_webhook_processed(
        self,
        event: WebhookEvent,
        error: str | None = None,
    ) -> None:
        WebhookEvent.objects.using(self.using).filter(pk=event.pk).update(
            processed=True,
            error=error,
        )
        event.processed = True
        event.error = error

    @_store_operation
    def recent_webhook_events(self, limit: int = 50) -> list[WebhookEvent]:
        return list(
            WebhookEvent.objects.using(self.using).order_by(
                "-created_at", "-id"
            )[:limit]
        )
