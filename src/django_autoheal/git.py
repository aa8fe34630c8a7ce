from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path

from django.conf import settings

from django_autoheal.conf import get_git_timeout
from django_autoheal.exceptions import GitError

logger = logging.getLogger(__name__)

DEFAULT_REMOTE = "origin"


@dataclass
class CommitResult:
    success: bool
    error: str | None = None
    committed: bool = False


class GitCommitter:
    """
    Stages, commits and pushes an applied fix with the git CLI.

    The committer never retries: any failing subprocess is reported in
    the returned :class:`CommitResult` and the retry policy is left to the
    orchestrator.

    Settings:
        AUTOHEAL_GIT_REMOTE: Remote to push to (default: git's upstream,
            or "origin" when only a branch is set)
        AUTOHEAL_GIT_BRANCH: Branch to push (default: git's upstream)
        AUTOHEAL_GIT_AUTHOR_NAME: Commit author name override
        AUTOHEAL_GIT_AUTHOR_EMAIL: Commit author email override
        AUTOHEAL_GIT_TIMEOUT: Seconds allowed per git command (default: 120)
    """

    def __init__(
        self,
        remote: str | None = None,
        branch: str | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self.remote = remote or getattr(settings, "AUTOHEAL_GIT_REMOTE", None)
        self.branch = branch or getattr(settings, "AUTOHEAL_GIT_BRANCH", None)
        if timeout_seconds is None:
            timeout_seconds = get_git_timeout()
        self.timeout_seconds = timeout_seconds

    def _identity_env(self) -> dict[str, str] | None:
        name = getattr(settings, "AUTOHEAL_GIT_AUTHOR_NAME", None)
        email = getattr(settings, "AUTOHEAL_GIT_AUTHOR_EMAIL", None)
        if not name and not email:
            return None
        env = dict(os.environ)
        if name:
            env["GIT_AUTHOR_NAME"] = name
            env["GIT_COMMITTER_NAME"] = name
        if email:
            env["GIT_AUTHOR_EMAIL"] = email
            env["GIT_COMMITTER_EMAIL"] = email
        return env

    def _run(
        self,
        args: list[str],
        working_dir: Path | str,
        env: dict[str, str] | None = None,
    ) -> str:
        """
        Run a git command and return its stdout.

        Raises:
            GitError: If git is missing, exits non-zero or times out
        """
        command = ["git", *args]
        try:
            completed = subprocess.run(
                command,
                cwd=working_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=True,
                env=env,
            )
        except subprocess.TimeoutExpired as e:
            raise GitError("timeout") from e
        except subprocess.CalledProcessError as e:
            output = (e.stderr or e.stdout or "").strip()
            raise GitError(
                f"git {args[0]} failed with exit code {e.returncode}: "
                f"{output}"
            ) from e
        except OSError as e:
            raise GitError(f"Failed to run git: {e}") from e
        return completed.stdout

    def head_sha(self, working_dir: Path | str) -> str | None:
        """Return the current HEAD commit, or None if it cannot be read."""
        try:
            return self._run(["rev-parse", "HEAD"], working_dir).strip()
        except GitError as e:
            logger.debug("Could not read HEAD in %s: %s", working_dir, e)
            return None

    def commit_and_push(
        self,
        message: str,
        working_dir: Path | str,
    ) -> CommitResult:
        """
        Commit every change in the working tree and push it.

        A clean tree after staging is an explicit no-op and reported as a
        success with ``committed=False``.

        Args:
            message: The commit message
            working_dir: Root of the repository checkout

        Returns:
            CommitResult with success flag and error message on failure
        """
        try:
            self._run(["add", "-A"], working_dir)

            status = self._run(["status", "--porcelain"], working_dir)
            if not status.strip():
                logger.info("No changes to commit in %s", working_dir)
                return CommitResult(success=True, committed=False)

            self._run(
                ["commit", "-m", message],
                working_dir,
                env=self._identity_env(),
            )

            push_args = ["push"]
            if self.branch:
                push_args.extend(
                    [self.remote or DEFAULT_REMOTE, f"HEAD:{self.branch}"]
                )
            elif self.remote:
                push_args.append(self.remote)
            self._run(push_args, working_dir)
        except GitError as e:
            logger.warning("Commit and push failed in %s: %s", working_dir, e)
            return CommitResult(success=False, error=str(e))

        logger.info("Committed and pushed fix in %s", working_dir)
        return CommitResult(success=True, committed=True)
