from __future__ import annotations

import io
import logging
import threading
import time
import zipfile
from dataclasses import asdict
from dataclasses import dataclass
from dataclasses import field
from typing import Any

import jwt
import requests
from django.conf import settings

from django_autoheal.conf import DEFAULT_GITHUB_API_URL
from django_autoheal.conf import get_github_timeout
from django_autoheal.exceptions import CollaboratorTimeout
from django_autoheal.exceptions import ConfigurationError
from django_autoheal.exceptions import GitHubAPIError

logger = logging.getLogger(__name__)

# App JWTs may live at most 10 minutes; backdate against clock drift
APP_JWT_LIFETIME_SECONDS = 9 * 60
APP_JWT_BACKDATE_SECONDS = 60

# Refresh installation tokens this long before GitHub expires them
TOKEN_REFRESH_MARGIN_SECONDS = 5 * 60
INSTALLATION_TOKEN_LIFETIME_SECONDS = 60 * 60

DEFAULT_MAX_LOG_CHARS = 50_000


@dataclass
class FailedStep:
    name: str
    number: int
    conclusion: str


@dataclass
class FailedJob:
    name: str
    conclusion: str
    steps: list[FailedStep] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FailedRunDetails:
    conclusion: str
    failed_jobs: list[FailedJob] = field(default_factory=list)


class GitHubClient:
    """
    Minimal GitHub App REST client.

    Authenticates as the app with an RS256 JWT, exchanges it for
    per-installation access tokens (cached until shortly before expiry)
    and exposes the three reads the orchestrator needs. Every request
    carries ``AUTOHEAL_GITHUB_TIMEOUT``.

    Settings:
        GITHUB_APP_ID: The GitHub App id (required)
        GITHUB_PRIVATE_KEY: PEM private key of the app (required)
        GITHUB_API_URL: API base URL (default: https://api.github.com)
        AUTOHEAL_GITHUB_TIMEOUT: Request timeout in seconds (default: 30)
    """

    def __init__(
        self,
        app_id: str | int | None = None,
        private_key: str | None = None,
        api_url: str | None = None,
        timeout_seconds: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.app_id = app_id or getattr(settings, "GITHUB_APP_ID", None)
        self.private_key = private_key or getattr(
            settings,
            "GITHUB_PRIVATE_KEY",
            None,
        )
        if not self.app_id or not self.private_key:
            raise ConfigurationError(
                "GITHUB_APP_ID and GITHUB_PRIVATE_KEY must be configured"
            )
        self.api_url = (
            api_url
            or getattr(settings, "GITHUB_API_URL", DEFAULT_GITHUB_API_URL)
        ).rstrip("/")
        if timeout_seconds is None:
            timeout_seconds = get_github_timeout()
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
        )
        self._tokens: dict[int, tuple[str, float]] = {}
        self._lock = threading.Lock()

    # Authentication

    def _app_jwt(self) -> str:
        now = int(time.time())
        payload = {
            "iat": now - APP_JWT_BACKDATE_SECONDS,
            "exp": now + APP_JWT_LIFETIME_SECONDS,
            "iss": str(self.app_id),
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    def _installation_token(self, installation_id: int) -> str:
        with self._lock:
            cached = self._tokens.get(installation_id)
            refresh_after = time.time() + TOKEN_REFRESH_MARGIN_SECONDS
            if cached and cached[1] > refresh_after:
                return cached[0]

        data = self._request(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            token=self._app_jwt(),
        ).json()
        token = data["token"]
        expires_at = time.time() + INSTALLATION_TOKEN_LIFETIME_SECONDS

        with self._lock:
            self._tokens[installation_id] = (token, expires_at)
        logger.debug("Issued installation token: id=%s", installation_id)
        return token

    def _request(
        self,
        method: str,
        path: str,
        token: str,
        **kwargs: Any,
    ) -> requests.Response:
        """
        Send an authenticated request.

        Raises:
            CollaboratorTimeout: If the request times out
            GitHubAPIError: On connection errors or non-2xx responses
        """
        url = path if path.startswith("http") else f"{self.api_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = self.session.request(
                method,
                url,
                headers=headers,
                timeout=self.timeout_seconds,
                **kwargs,
            )
            response.raise_for_status()
        except requests.Timeout as e:
            raise CollaboratorTimeout("github", self.timeout_seconds) from e
        except requests.HTTPError as e:
            status_code = e.response.status_code
            raise GitHubAPIError(
                f"GitHub API {method} {path} failed with {status_code}",
                status_code=status_code,
            ) from e
        except requests.RequestException as e:
            raise GitHubAPIError(
                f"GitHub API {method} {path} failed: {e}"
            ) from e
        return response

    def _installation_get(
        self,
        installation_id: int,
        path: str,
        **kwargs: Any,
    ) -> requests.Response:
        token = self._installation_token(installation_id)
        return self._request("GET", path, token=token, **kwargs)

    # Reads

    def resolve_installation(self, owner: str, repo: str) -> int:
        """Return the app installation id for a repository."""
        data = self._request(
            "GET",
            f"/repos/{owner}/{repo}/installation",
            token=self._app_jwt(),
        ).json()
        return int(data["id"])

    def get_failed_run_details(
        self,
        installation_id: int,
        owner: str,
        repo: str,
        run_id: int,
    ) -> FailedRunDetails:
        """
        Fetch a workflow run and its failed jobs.

        Jobs and their steps are filtered to ``conclusion == "failure"``.

        Returns:
            FailedRunDetails with the run conclusion and failed jobs
        """
        run = self._installation_get(
            installation_id,
            f"/repos/{owner}/{repo}/actions/runs/{run_id}",
        ).json()
        jobs = self._installation_get(
            installation_id,
            f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs",
            params={"per_page": 100},
        ).json()

        failed_jobs = []
        for job in jobs.get("jobs", []):
            if job.get("conclusion") != "failure":
                continue
            steps = [
                FailedStep(
                    name=step.get("name", ""),
                    number=step.get("number", 0),
                    conclusion=step.get("conclusion") or "unknown",
                )
                for step in job.get("steps") or []
                if step.get("conclusion") == "failure"
            ]
            failed_jobs.append(
                FailedJob(
                    name=job.get("name", ""),
                    conclusion=job.get("conclusion") or "unknown",
                    steps=steps,
                )
            )

        return FailedRunDetails(
            conclusion=run.get("conclusion") or "unknown",
            failed_jobs=failed_jobs,
        )

    def get_workflow_run_logs(
        self,
        installation_id: int,
        owner: str,
        repo: str,
        run_id: int,
        max_chars: int = DEFAULT_MAX_LOG_CHARS,
    ) -> str:
        """
        Download the log archive of a run and return its text.

        The archive holds one file per job step; files are concatenated
        in archive order under a ``==> name <==`` header and the result is
        truncated to ``max_chars``.
        """
        response = self._installation_get(
            installation_id,
            f"/repos/{owner}/{repo}/actions/runs/{run_id}/logs",
        )
        try:
            archive = zipfile.ZipFile(io.BytesIO(response.content))
        except zipfile.BadZipFile as e:
            raise GitHubAPIError(
                f"Run {run_id} logs are not a zip archive"
            ) from e

        parts: list[str] = []
        size = 0
        with archive:
            for name in archive.namelist():
                if name.endswith("/"):
                    continue
                text = archive.read(name).decode("utf-8", errors="replace")
                chunk = f"==> {name} <==\n{text}\n"
                parts.append(chunk)
                size += len(chunk)
                if size >= max_chars:
                    break

        return "".join(parts)[:max_chars]
