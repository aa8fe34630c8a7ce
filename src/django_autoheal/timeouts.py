from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager

from django_autoheal.exceptions import ExecutionTimeoutError

logger = logging.getLogger(__name__)


class TimeoutFlag:
    """Thread-safe flag for cooperative timeout checking."""

    def __init__(
        self,
        timeout_seconds: int = 0,
        commit_sha: str | None = None,
    ) -> None:
        self._timed_out = False
        self._lock = threading.Lock()
        self.timeout_seconds = timeout_seconds
        self.commit_sha = commit_sha

    def set_timed_out(self) -> None:
        with self._lock:
            self._timed_out = True

    def is_timed_out(self) -> bool:
        with self._lock:
            return self._timed_out

    def raise_if_timed_out(self) -> None:
        """
        Raise if the timer has fired.

        Called between orchestration steps so a run that overran its
        budget stops before starting the next external call.

        Raises:
            ExecutionTimeoutError: If the timeout has expired
        """
        if self.is_timed_out():
            raise ExecutionTimeoutError(
                f"Heal run exceeded timeout of {self.timeout_seconds}s",
                timeout_seconds=self.timeout_seconds,
                commit_sha=self.commit_sha,
            )


@contextmanager
def execution_timeout(
    timeout_seconds: int,
    commit_sha: str,
) -> Generator[TimeoutFlag]:
    """
    Context manager for cooperative execution timeout.

    A ``threading.Timer`` sets a flag when the timeout expires. The body
    should call ``flag.raise_if_timed_out()`` between steps.

    Note: This is a cooperative timeout - it will not interrupt blocking I/O
    operations. Every collaborator call carries its own I/O timeout.

    Args:
        timeout_seconds: Maximum execution time in seconds (0 disables)
        commit_sha: The commit being healed (for error messages)

    Leaving the context never raises: a run that finished its last step
    after the timer fired keeps its recorded outcome.

    Yields:
        TimeoutFlag object that can be checked for timeout status
    """
    flag = TimeoutFlag(timeout_seconds, commit_sha)
    timer: threading.Timer | None = None

    def _on_timeout() -> None:
        flag.set_timed_out()
        logger.warning(
            "Heal run timeout triggered: commit=%s, timeout=%ds",
            commit_sha[:7],
            timeout_seconds,
        )

    if timeout_seconds > 0:
        timer = threading.Timer(timeout_seconds, _on_timeout)
        timer.daemon = True
        timer.start()

    try:
        yield flag
    finally:
        if timer is not None:
            timer.cancel()
