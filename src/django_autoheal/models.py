from __future__ import annotations

from django.db import models


class RetryAttemptStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    HEALING = "healing", "Healing"
    SUCCESS = "success", "Success"
    EXHAUSTED = "exhausted", "Exhausted"
    CANCELLED = "cancelled", "Cancelled"


ACTIVE_STATUSES = (RetryAttemptStatus.PENDING, RetryAttemptStatus.HEALING)
TERMINAL_STATUSES = (
    RetryAttemptStatus.SUCCESS,
    RetryAttemptStatus.EXHAUSTED,
    RetryAttemptStatus.CANCELLED,
)


class RetryAttempt(models.Model):
    """
    Per-commit record of how many times auto-heal has been tried.

    Rows are written exclusively through
    :class:`django_autoheal.store.RetryStateStore`.
    """

    commit_sha = models.CharField(max_length=64)
    repo_owner = models.CharField(max_length=255)
    repo_name = models.CharField(max_length=255)
    workflow_run_id = models.BigIntegerField(
        null=True,
        blank=True,
        help_text="Last pipeline run associated with this commit",
    )
    attempt_count = models.PositiveIntegerField(
        default=0,
        help_text="Number of heal attempts started for this commit",
    )
    status = models.CharField(
        max_length=16,
        choices=RetryAttemptStatus.choices,
        default=RetryAttemptStatus.PENDING,
        db_index=True,
    )
    last_error = models.TextField(null=True, blank=True)
    last_attempt_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "retry_attempts"
        constraints = [
            models.UniqueConstraint(
                fields=["commit_sha", "repo_owner", "repo_name"],
                name="unique_retry_attempt_per_commit",
            ),
        ]

    def __str__(self) -> str:
        return (
            f"{self.repo_owner}/{self.repo_name}@{self.commit_sha[:7]} "
            f"({self.status}, {self.attempt_count} attempts)"
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class WebhookEvent(models.Model):
    """Append-only log of received webhook deliveries."""

    event_type = models.CharField(max_length=64)
    action = models.CharField(max_length=64, null=True, blank=True)
    repo_owner = models.CharField(max_length=255, null=True, blank=True)
    repo_name = models.CharField(max_length=255, null=True, blank=True)
    payload_summary = models.TextField(null=True, blank=True)
    processed = models.BooleanField(default=False)
    error = models.TextField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        db_table = "webhook_events"

    def __str__(self) -> str:
        if self.action:
            return f"{self.event_type}.{self.action}"
        return self.event_type


class AutoHealHistory(models.Model):
    """Append-only audit record of a single orchestration run."""

    retry_attempt = models.ForeignKey(
        RetryAttempt,
        on_delete=models.PROTECT,
        related_name="heal_history",
    )
    error_message = models.TextField(null=True, blank=True)
    fix_prompt = models.TextField(null=True, blank=True)
    fix_applied = models.TextField(null=True, blank=True)
    commit_sha_before = models.CharField(max_length=64, null=True, blank=True)
    commit_sha_after = models.CharField(max_length=64, null=True, blank=True)
    success = models.BooleanField(default=False)
    duration_ms = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "auto_heal_history"
        verbose_name_plural = "auto-heal history"

    def __str__(self) -> str:
        outcome = "success" if self.success else "failure"
        return f"{self.retry_attempt} -> {outcome}"
