from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from pathlib import Path
from pathlib import PurePosixPath
from typing import Callable

from django_autoheal.applier import ApplyResult
from django_autoheal.applier import FixApplier
from django_autoheal.conf import get_backoff_base_seconds
from django_autoheal.conf import get_backoff_max_seconds
from django_autoheal.conf import get_execution_timeout
from django_autoheal.conf import get_max_retries
from django_autoheal.conf import get_min_confidence
from django_autoheal.conf import get_workspace_root
from django_autoheal.conf import is_auto_apply_enabled
from django_autoheal.conf import is_dry_run
from django_autoheal.exceptions import CollaboratorError
from django_autoheal.exceptions import CollaboratorTimeout
from django_autoheal.exceptions import ConfigurationError
from django_autoheal.exceptions import ExecutionTimeoutError
from django_autoheal.exceptions import FixGateError
from django_autoheal.exceptions import LowConfidence
from django_autoheal.exceptions import MaxRetriesExceeded
from django_autoheal.exceptions import NoFixAvailable
from django_autoheal.exceptions import StoreUnavailable
from django_autoheal.git import CommitResult
from django_autoheal.git import GitCommitter
from django_autoheal.github import FailedJob
from django_autoheal.github import GitHubClient
from django_autoheal.llm import FixSuggestion
from django_autoheal.llm import FixSuggestionClient
from django_autoheal.llm import build_fix_client
from django_autoheal.llm.base import build_user_prompt
from django_autoheal.models import AutoHealHistory
from django_autoheal.models import RetryAttempt
from django_autoheal.models import RetryAttemptStatus
from django_autoheal.store import RetryStateStore
from django_autoheal.timeouts import TimeoutFlag
from django_autoheal.timeouts import execution_timeout

logger = logging.getLogger(__name__)

MAX_CONTEXT_LOG_CHARS = 5000
MAX_STORED_TEXT_CHARS = 10_000
DEFAULT_SCOPE = "core"

SOURCE_EXTENSIONS = (
    "py|pyi|ts|tsx|js|jsx|mjs|cjs|vue|svelte|go|rb|java|kt|rs|php|cs"
)
_PATH = rf"([/\w.\-]+\.(?:{SOURCE_EXTENSIONS}))"
FILE_PATH_PATTERNS = (
    re.compile(rf"(?:at\s+)?{_PATH}(?::\d+(?::\d+)?)?"),
    re.compile(rf"(?:Error in |from )\.?{_PATH}"),
    re.compile(rf"['\"]{_PATH}['\"]"),
)


class HealOutcome(str, Enum):
    HEALED = "healed"
    DRY_RUN = "dry_run"
    NO_FIX = "no_fix"
    LOW_CONFIDENCE = "low_confidence"
    APPLY_FAILED = "apply_failed"
    GIT_FAILED = "git_failed"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


FAILED_OUTCOMES = frozenset(
    {
        HealOutcome.NO_FIX,
        HealOutcome.LOW_CONFIDENCE,
        HealOutcome.APPLY_FAILED,
        HealOutcome.GIT_FAILED,
        HealOutcome.EXHAUSTED,
    }
)


@dataclass
class HealContext:
    """Everything known about a failed pipeline run when healing starts."""

    repo_owner: str
    repo_name: str
    commit_sha: str
    workflow_run_id: int | None = None
    installation_id: int | None = None
    failed_jobs: list[FailedJob] = field(default_factory=list)
    attempt_number: int = 0
    dry_run: bool = False

    @property
    def repo_full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"


@dataclass
class HealResult:
    outcome: HealOutcome
    attempt: RetryAttempt | None = None
    history: AutoHealHistory | None = None
    fix: FixSuggestion | None = None
    apply_result: ApplyResult | None = None
    commit_result: CommitResult | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.outcome in FAILED_OUTCOMES


def _strip_dot_prefix(path: str) -> str:
    while path.startswith("./"):
        path = path[2:]
    return path


def build_error_message(failed_jobs: list[FailedJob]) -> str:
    """Summarize failed jobs, one line per job."""
    lines = []
    for job in failed_jobs:
        failed_steps = [
            step.name for step in job.steps if step.conclusion == "failure"
        ]
        if failed_steps:
            steps = ", ".join(failed_steps)
            lines.append(f'Job "{job.name}" failed at steps: {steps}')
        else:
            lines.append(f'Job "{job.name}" failed')
    return "\n".join(lines)


def extract_file_paths(text: str, working_dir: Path) -> list[str]:
    """
    Find source file paths mentioned in error text.

    Only paths that exist inside ``working_dir`` are kept. Returned paths
    are relative to ``working_dir`` and keep their first-seen order.
    """
    root = working_dir.resolve()
    paths: list[str] = []
    for pattern in FILE_PATH_PATTERNS:
        for match in pattern.finditer(text):
            candidate = (root / _strip_dot_prefix(match.group(1))).resolve()
            if root not in candidate.parents or not candidate.is_file():
                continue
            relative = candidate.relative_to(root).as_posix()
            if relative not in paths:
                paths.append(relative)
    return paths


def read_file_contents(
    paths: list[str],
    working_dir: Path,
) -> dict[str, str]:
    """Read files relative to ``working_dir``, skipping unreadable ones."""
    contents = {}
    for path in paths:
        try:
            contents[path] = (working_dir / path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("Skipping unreadable file %s: %s", path, e)
    return contents


def derive_scope(changed_paths: list[str]) -> str:
    """Return the top-level directory of the first changed file."""
    if not changed_paths:
        return DEFAULT_SCOPE
    parts = PurePosixPath(_strip_dot_prefix(changed_paths[0])).parent.parts
    if not parts:
        return DEFAULT_SCOPE
    return parts[0]


def build_commit_message(fix: FixSuggestion, changed_paths: list[str]) -> str:
    scope = derive_scope(changed_paths)
    confidence = round(fix.confidence * 100)
    return (
        f"fix({scope}): auto-heal pipeline failure\n\n"
        f"{fix.root_cause}\n\n"
        f"Auto-generated fix with {confidence}% confidence.\n"
    )


def get_backoff_delay(attempt_number: int) -> float:
    """
    Seconds to wait before the given attempt.

    ``base * 2 ** (attempt_number - 1)`` capped at the configured maximum;
    the first attempt never waits and a zero base disables backoff.
    """
    base = get_backoff_base_seconds()
    if attempt_number <= 1 or base <= 0:
        return 0
    return min(base * 2 ** (attempt_number - 1), get_backoff_max_seconds())


class AutoHealOrchestrator:
    """
    State machine driving one repair attempt per failed pipeline run.

    The orchestrator consumes an attempt from the retry store before any
    external call, so duplicated or concurrent deliveries for a commit
    are bounded by ``AUTOHEAL_MAX_RETRIES``. Each run then gathers the
    failure details, asks the fix-suggestion client for a fix, gates it on
    confidence, applies it to the checkout and commits it.

    Collaborators are injected; the GitHub and fix-suggestion clients are
    built from settings on first use when not supplied.
    """

    def __init__(
        self,
        store: RetryStateStore,
        github_client: GitHubClient | None = None,
        fix_client: FixSuggestionClient | None = None,
        committer: GitCommitter | None = None,
        applier_class: type[FixApplier] = FixApplier,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self._github_client = github_client
        self._fix_client = fix_client
        self.committer = committer or GitCommitter()
        self.applier_class = applier_class
        self._sleep = sleep

    @property
    def github_client(self) -> GitHubClient:
        if self._github_client is None:
            self._github_client = GitHubClient()
        return self._github_client

    @property
    def fix_client(self) -> FixSuggestionClient:
        if self._fix_client is None:
            self._fix_client = build_fix_client()
        return self._fix_client

    def get_working_dir(self, repo_owner: str, repo_name: str) -> Path:
        """
        Return the local checkout of a repository.

        Raises:
            ConfigurationError: If the checkout does not exist
        """
        working_dir = get_workspace_root() / repo_owner / repo_name
        if not working_dir.is_dir():
            raise ConfigurationError(
                f"No checkout for {repo_owner}/{repo_name} at {working_dir}"
            )
        return working_dir

    # Entry points

    def trigger(self, context: HealContext) -> HealResult:
        """
        Run one heal attempt for a failed pipeline run.

        Args:
            context: The failed run

        Returns:
            HealResult describing the outcome

        Raises:
            StoreUnavailable: If the retry store cannot be used
            CollaboratorError: If GitHub or the fix provider fails
            ExecutionTimeoutError: If the run exceeds its time budget
        """
        owner = context.repo_owner
        repo = context.repo_name
        commit = context.commit_sha
        max_retries = get_max_retries()

        self.store.get_or_create(
            commit,
            owner,
            repo,
            workflow_run_id=context.workflow_run_id,
        )
        attempt = self.store.claim_attempt(commit, owner, repo, max_retries)

        if attempt is None:
            return self._not_claimed(context, max_retries)

        context.attempt_number = attempt.attempt_count
        context.dry_run = context.dry_run or is_dry_run()
        logger.info(
            "Auto-heal triggered: repo=%s, commit=%s, attempt=%d/%d, "
            "run_id=%s, failed_jobs=%s",
            context.repo_full_name,
            commit[:7],
            context.attempt_number,
            max_retries,
            context.workflow_run_id,
            ", ".join(job.name for job in context.failed_jobs) or "-",
        )

        delay = get_backoff_delay(context.attempt_number)
        if delay:
            logger.info(
                "Applying backoff delay: commit=%s, delay=%ss",
                commit[:7],
                delay,
            )
            self._sleep(delay)

        return self._run(context, attempt)

    def manual_trigger(
        self,
        repo_owner: str,
        repo_name: str,
        commit_sha: str,
        error_message: str,
        dry_run: bool = False,
    ) -> HealResult:
        """
        Heal a commit on operator request.

        The retry limit is not consulted and the attempt counter is left
        untouched; the run is still recorded in the heal history.
        """
        attempt = self.store.get_or_create(commit_sha, repo_owner, repo_name)
        context = HealContext(
            repo_owner=repo_owner,
            repo_name=repo_name,
            commit_sha=commit_sha,
            attempt_number=attempt.attempt_count,
            dry_run=dry_run or is_dry_run(),
        )
        logger.info(
            "Manual auto-heal trigger: repo=%s, commit=%s, dry_run=%s",
            context.repo_full_name,
            commit_sha[:7],
            context.dry_run,
        )
        return self._run(context, attempt, error_message=error_message)

    # Steps

    def _not_claimed(
        self,
        context: HealContext,
        max_retries: int,
    ) -> HealResult:
        owner = context.repo_owner
        repo = context.repo_name
        commit = context.commit_sha

        current = self.store.get(commit, owner, repo)
        if current is not None and current.status in (
            RetryAttemptStatus.SUCCESS,
            RetryAttemptStatus.CANCELLED,
        ):
            logger.info(
                "Skipping auto-heal: repo=%s, commit=%s, status=%s",
                context.repo_full_name,
                commit[:7],
                current.status,
            )
            return HealResult(HealOutcome.SKIPPED, attempt=current)

        if self.store.is_max_retries_reached(commit, owner, repo, max_retries):
            self.store.mark_exhausted(commit, owner, repo)
        attempt = self.store.get(commit, owner, repo)
        exceeded = MaxRetriesExceeded(
            commit,
            attempt.attempt_count if attempt is not None else 0,
        )
        logger.warning(
            "Auto-heal stopped: repo=%s, max_retries=%d, reason=%s",
            context.repo_full_name,
            max_retries,
            exceeded,
        )
        return HealResult(
            HealOutcome.EXHAUSTED,
            attempt=attempt,
            error=str(exceeded),
        )

    def _fetch_logs(self, context: HealContext, installation_id: int) -> str:
        if context.workflow_run_id is None:
            return ""
        try:
            return self.github_client.get_workflow_run_logs(
                installation_id,
                context.repo_owner,
                context.repo_name,
                context.workflow_run_id,
            )
        except CollaboratorError as e:
            logger.warning(
                "Could not fetch run logs: repo=%s, run_id=%s, error=%s",
                context.repo_full_name,
                context.workflow_run_id,
                e,
            )
            return ""

    def _gather_failure(self, context: HealContext) -> tuple[str, str]:
        """Fetch run details and logs, returning (error_message, context)."""
        installation_id = context.installation_id
        if installation_id is None:
            installation_id = self.github_client.resolve_installation(
                context.repo_owner,
                context.repo_name,
            )
            context.installation_id = installation_id

        if not context.failed_jobs and context.workflow_run_id is not None:
            details = self.github_client.get_failed_run_details(
                installation_id,
                context.repo_owner,
                context.repo_name,
                context.workflow_run_id,
            )
            context.failed_jobs = details.failed_jobs

        error_message = build_error_message(context.failed_jobs)
        if not error_message:
            error_message = f"Workflow run {context.workflow_run_id} failed"

        logs = self._fetch_logs(context, installation_id)
        fix_context = json.dumps(
            {
                "workflow_run_id": context.workflow_run_id,
                "failed_jobs": [job.to_dict() for job in context.failed_jobs],
                "attempt": context.attempt_number,
                "logs": logs[:MAX_CONTEXT_LOG_CHARS],
            }
        )
        return error_message, fix_context

    def _check_gate(self, fix: FixSuggestion) -> None:
        if not fix.suggested_fix.files:
            raise NoFixAvailable("Fix suggestion contains no file changes")
        threshold = get_min_confidence()
        if fix.confidence < threshold:
            raise LowConfidence(fix.confidence, threshold)

    def _run(
        self,
        context: HealContext,
        attempt: RetryAttempt,
        error_message: str | None = None,
    ) -> HealResult:
        started = time.monotonic()
        try:
            with execution_timeout(
                get_execution_timeout(),
                context.commit_sha,
            ) as flag:
                return self._heal(
                    context,
                    attempt,
                    flag,
                    started,
                    error_message,
                )
        except StoreUnavailable:
            raise
        except Exception as e:
            if isinstance(e, (CollaboratorTimeout, ExecutionTimeoutError)):
                last_error = "timeout"
            else:
                last_error = str(e)
            logger.exception(
                "Auto-heal error: repo=%s, commit=%s, attempt=%d",
                context.repo_full_name,
                context.commit_sha[:7],
                context.attempt_number,
            )
            self.store.record_history(
                attempt,
                error_message=error_message or last_error,
                success=False,
                duration_ms=self._elapsed_ms(started),
                commit_sha_before=context.commit_sha,
            )
            self._set_last_error(context, last_error)
            raise

    def _heal(
        self,
        context: HealContext,
        attempt: RetryAttempt,
        flag: TimeoutFlag,
        started: float,
        error_message: str | None,
    ) -> HealResult:
        fix_context = None
        if error_message is None:
            error_message, fix_context = self._gather_failure(context)
            flag.raise_if_timed_out()

        working_dir = self.get_working_dir(
            context.repo_owner,
            context.repo_name,
        )
        file_contents = read_file_contents(
            extract_file_paths(error_message, working_dir),
            working_dir,
        )
        fix_prompt = build_user_prompt(
            error_message,
            file_contents,
            fix_context,
        )[:MAX_STORED_TEXT_CHARS]

        fix = self.fix_client.generate_fix(
            error_message,
            file_contents,
            fix_context,
        )
        flag.raise_if_timed_out()

        try:
            self._check_gate(fix)
        except FixGateError as e:
            logger.info(
                "Fix rejected: repo=%s, commit=%s, reason=%s",
                context.repo_full_name,
                context.commit_sha[:7],
                e,
            )
            history = self.store.record_history(
                attempt,
                error_message=error_message,
                success=False,
                duration_ms=self._elapsed_ms(started),
                fix_prompt=fix_prompt,
                commit_sha_before=context.commit_sha,
            )
            self._set_last_error(context, str(e))
            if isinstance(e, NoFixAvailable):
                outcome = HealOutcome.NO_FIX
            else:
                outcome = HealOutcome.LOW_CONFIDENCE
            return HealResult(
                outcome,
                attempt=self._current(context),
                history=history,
                fix=fix,
                error=str(e),
            )

        flag.raise_if_timed_out()
        applier = self.applier_class(working_dir)
        apply_result = applier.apply(
            fix.suggested_fix.files,
            dry_run=context.dry_run,
        )

        commit_result = None
        sha_before = None
        sha_after = None
        if (
            not context.dry_run
            and is_auto_apply_enabled()
            and apply_result.applied
        ):
            sha_before = self.committer.head_sha(working_dir)
            commit_result = self.committer.commit_and_push(
                build_commit_message(fix, apply_result.applied),
                working_dir,
            )
            if commit_result.success:
                sha_after = self.committer.head_sha(working_dir)

        success = apply_result.succeeded and (
            commit_result is None or commit_result.success
        )
        history = self.store.record_history(
            attempt,
            error_message=error_message,
            success=success,
            duration_ms=self._elapsed_ms(started),
            fix_prompt=fix_prompt,
            fix_applied=apply_result.summary()[:MAX_STORED_TEXT_CHARS],
            commit_sha_before=sha_before or context.commit_sha,
            commit_sha_after=sha_after,
        )

        error = None
        if not apply_result.succeeded:
            outcome = HealOutcome.APPLY_FAILED
            error = apply_result.summary()
        elif commit_result is not None and not commit_result.success:
            outcome = HealOutcome.GIT_FAILED
            error = commit_result.error
        elif context.dry_run:
            outcome = HealOutcome.DRY_RUN
        else:
            outcome = HealOutcome.HEALED

        if outcome == HealOutcome.HEALED:
            self.store.mark_success(
                context.commit_sha,
                context.repo_owner,
                context.repo_name,
            )
        elif error is not None:
            self._set_last_error(context, error)

        logger.info(
            "Auto-heal finished: repo=%s, commit=%s, attempt=%d, outcome=%s",
            context.repo_full_name,
            context.commit_sha[:7],
            context.attempt_number,
            outcome.value,
        )
        return HealResult(
            outcome,
            attempt=self._current(context),
            history=history,
            fix=fix,
            apply_result=apply_result,
            commit_result=commit_result,
            error=error,
        )

    # Helpers

    def _current(self, context: HealContext) -> RetryAttempt | None:
        return self.store.get(
            context.commit_sha,
            context.repo_owner,
            context.repo_name,
        )

    def _set_last_error(self, context: HealContext, error: str) -> None:
        self.store.update(
            context.commit_sha,
            context.repo_owner,
            context.repo_name,
            last_error=error[:MAX_STORED_TEXT_CHARS],
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
