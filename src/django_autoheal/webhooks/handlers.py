from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from typing import Any

from django_autoheal.conf import is_dry_run
from django_autoheal.exceptions import InvalidPayloadError
from django_autoheal.orchestrator import AutoHealOrchestrator
from django_autoheal.orchestrator import HealContext

if TYPE_CHECKING:
    from django_autoheal.webhooks.router import WebhookDelivery
    from django_autoheal.webhooks.router import WebhookRouter

logger = logging.getLogger(__name__)


# Payload summaries


def summarize_workflow_run(payload: dict[str, Any]) -> dict[str, Any]:
    run = payload["workflow_run"]
    return {
        "run_id": run.get("id"),
        "conclusion": run.get("conclusion"),
        "workflow": run.get("name"),
        "head_sha": run.get("head_sha"),
    }


def summarize_check_run(payload: dict[str, Any]) -> dict[str, Any]:
    check_run = payload["check_run"]
    return {
        "check_run_id": check_run.get("id"),
        "name": check_run.get("name"),
        "conclusion": check_run.get("conclusion"),
    }


def summarize_pull_request(payload: dict[str, Any]) -> dict[str, Any]:
    pull_request = payload["pull_request"]
    return {
        "pr_number": pull_request.get("number"),
        "head_sha": (pull_request.get("head") or {}).get("sha"),
        "title": pull_request.get("title"),
    }


def summarize_installation(payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "installation_id": payload["installation"].get("id"),
        "repositories": len(payload.get("repositories") or []),
    }


def summarize_ping(payload: dict[str, Any]) -> dict[str, Any]:
    return {"zen": payload.get("zen")}


# Handlers


def handle_workflow_run(
    delivery: WebhookDelivery,
    orchestrator: AutoHealOrchestrator,
) -> None:
    """
    Trigger a heal attempt for a failed, completed workflow run.

    Raises:
        InvalidPayloadError: If the payload lacks the run identity
    """
    if delivery.action != "completed":
        logger.info("Ignoring workflow_run action: %s", delivery.action)
        return

    run = delivery.payload.get("workflow_run") or {}
    conclusion = run.get("conclusion")
    logger.info(
        "Workflow %r completed with conclusion: %s",
        run.get("name"),
        conclusion,
    )
    if conclusion != "failure":
        return

    owner = delivery.repo_owner
    repo = delivery.repo_name
    head_sha = run.get("head_sha")
    if not owner or not repo or not head_sha:
        raise InvalidPayloadError(
            "workflow_run payload is missing repository or head_sha"
        )

    installation = delivery.payload.get("installation") or {}
    context = HealContext(
        repo_owner=owner,
        repo_name=repo,
        commit_sha=head_sha,
        workflow_run_id=run.get("id"),
        installation_id=installation.get("id"),
        dry_run=is_dry_run(),
    )
    orchestrator.trigger(context)


def log_only(
    delivery: WebhookDelivery,
    orchestrator: AutoHealOrchestrator,
) -> None:
    logger.info(
        "Received webhook event: event=%s, action=%s, repo=%s/%s",
        delivery.event_type,
        delivery.action,
        delivery.repo_owner,
        delivery.repo_name,
    )


def register_defaults(router: WebhookRouter) -> None:
    router.register(
        "workflow_run",
        handle_workflow_run,
        summarize_workflow_run,
    )
    router.register("check_run", log_only, summarize_check_run)
    router.register("pull_request", log_only, summarize_pull_request)
    router.register("installation", log_only, summarize_installation)
    router.register("ping", log_only, summarize_ping)
