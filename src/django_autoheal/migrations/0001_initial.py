from __future__ import annotations

import django.db.models.deletion
from django.db import migrations
from django.db import models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="RetryAttempt",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("commit_sha", models.CharField(max_length=64)),
                ("repo_owner", models.CharField(max_length=255)),
                ("repo_name", models.CharField(max_length=255)),
                (
                    "workflow_run_id",
                    models.BigIntegerField(
                        blank=True,
                        help_text=(
                            "Last pipeline run associated with this commit"
                        ),
                        null=True,
                    ),
                ),
                (
                    "attempt_count",
                    models.PositiveIntegerField(
                        default=0,
                        help_text=(
                            "Number of heal attempts started for this commit"
                        ),
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("healing", "Healing"),
                            ("success", "Success"),
                            ("exhausted", "Exhausted"),
                            ("cancelled", "Cancelled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=16,
                    ),
                ),
                ("last_error", models.TextField(blank=True, null=True)),
                (
                    "last_attempt_at",
                    models.DateTimeField(blank=True, null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "db_table": "retry_attempts",
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("event_type", models.CharField(max_length=64)),
                (
                    "action",
                    models.CharField(blank=True, max_length=64, null=True),
                ),
                (
                    "repo_owner",
                    models.CharField(blank=True, max_length=255, null=True),
                ),
                (
                    "repo_name",
                    models.CharField(blank=True, max_length=255, null=True),
                ),
                ("payload_summary", models.TextField(blank=True, null=True)),
                ("processed", models.BooleanField(default=False)),
                ("error", models.TextField(blank=True, null=True)),
                (
                    "created_at",
                    models.DateTimeField(auto_now_add=True, db_index=True),
                ),
            ],
            options={
                "db_table": "webhook_events",
            },
        ),
        migrations.CreateModel(
            name="AutoHealHistory",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True,
                        primary_key=True,
                        serialize=False,
                        verbose_name="ID",
                    ),
                ),
                ("error_message", models.TextField(blank=True, null=True)),
                ("fix_prompt", models.TextField(blank=True, null=True)),
                ("fix_applied", models.TextField(blank=True, null=True)),
                (
                    "commit_sha_before",
                    models.CharField(blank=True, max_length=64, null=True),
                ),
                (
                    "commit_sha_after",
                    models.CharField(blank=True, max_length=64, null=True),
                ),
                ("success", models.BooleanField(default=False)),
                (
                    "duration_ms",
                    models.PositiveIntegerField(blank=True, null=True),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "retry_attempt",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="heal_history",
                        to="django_autoheal.retryattempt",
                    ),
                ),
            ],
            options={
                "db_table": "auto_heal_history",
                "verbose_name_plural": "auto-heal history",
            },
        ),
        migrations.AddConstraint(
            model_name="retryattempt",
            constraint=models.UniqueConstraint(
                fields=("commit_sha", "repo_owner", "repo_name"),
                name="unique_retry_attempt_per_commit",
            ),
        ),
    ]
