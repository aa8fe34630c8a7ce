from __future__ import annotations

import logging
import signal
import threading
import time
import uuid
from concurrent.futures import Future
from concurrent.futures import ThreadPoolExecutor
from typing import Any
from typing import Callable

from django.db import close_old_connections

from django_autoheal.conf import get_dispatch_workers
from django_autoheal.conf import get_shutdown_timeout

logger = logging.getLogger(__name__)


class BackgroundDispatcher:
    """
    Runs webhook handling after the delivery has been acknowledged.

    Work is executed on a thread pool. Every submitted task is tracked
    while in flight so a SIGTERM can stop intake and wait for running
    heal attempts to finish before the process exits.

    Delivery is at-least-once: GitHub redelivers on timeouts and a task
    lost to a hard kill is not replayed here. The retry store keys heal
    attempts by commit, so repeated handling of a delivery is bounded.

    Settings:
        AUTOHEAL_DISPATCH_WORKERS: Thread pool size (default: 4)
        AUTOHEAL_SHUTDOWN_TIMEOUT: Seconds to wait for in-flight tasks
            on shutdown (default: 30)

    Note:
        Each process (e.g. each gunicorn worker) has its own dispatcher.
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self._lock = threading.RLock()
        self._shutting_down = False
        self._idle = threading.Event()
        self._idle.set()
        self._in_flight: dict[str, tuple[str, float]] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._max_workers = max_workers
        self._signal_handlers_installed = False
        self._previous_sigterm_handler: Any = None

    @property
    def max_workers(self) -> int:
        return self._max_workers or get_dispatch_workers()

    @property
    def is_shutting_down(self) -> bool:
        with self._lock:
            return self._shutting_down

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="autoheal",
            )
        return self._executor

    def submit(
        self,
        label: str,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Future | None:
        """
        Schedule ``func(*args, **kwargs)`` on the pool.

        Args:
            label: Human readable task description for logs and status

        Returns:
            The task's Future, or None if shutdown is in progress
        """
        task_id = uuid.uuid4().hex
        with self._lock:
            if self._shutting_down:
                logger.info("Rejecting task during shutdown: %s", label)
                return None
            self._in_flight[task_id] = (label, time.time())
            self._idle.clear()
            executor = self._get_executor()

        logger.debug(
            "Dispatching task: id=%s, label=%s, in_flight=%d",
            task_id,
            label,
            self.in_flight_count,
        )
        try:
            return executor.submit(
                self._run,
                task_id,
                label,
                func,
                args,
                kwargs,
            )
        except RuntimeError:
            self._track_end(task_id)
            raise

    def _run(
        self,
        task_id: str,
        label: str,
        func: Callable[..., Any],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> Any:
        try:
            return func(*args, **kwargs)
        except Exception:
            logger.exception("Background task failed: %s", label)
            raise
        finally:
            close_old_connections()
            self._track_end(task_id)

    def _track_end(self, task_id: str) -> None:
        with self._lock:
            entry = self._in_flight.pop(task_id, None)
            if entry is not None:
                logger.debug(
                    "Task finished: label=%s, elapsed=%.2fs, in_flight=%d",
                    entry[0],
                    time.time() - entry[1],
                    len(self._in_flight),
                )
            if not self._in_flight:
                self._idle.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no task is in flight. Returns False on timeout."""
        return self._idle.wait(timeout=timeout)

    def initiate_shutdown(self, timeout: float | None = None) -> bool:
        """
        Stop accepting tasks and wait for in-flight ones.

        Args:
            timeout: Seconds to wait (default: AUTOHEAL_SHUTDOWN_TIMEOUT)

        Returns:
            True if every in-flight task finished in time
        """
        with self._lock:
            if self._shutting_down:
                logger.debug("Shutdown already in progress")
            self._shutting_down = True
            in_flight = len(self._in_flight)

        if timeout is None:
            timeout = get_shutdown_timeout()
        if in_flight:
            logger.info(
                "Graceful shutdown initiated, waiting for %d in-flight "
                "task(s)",
                in_flight,
            )

        completed = self.wait_idle(timeout)
        if completed:
            logger.info("Graceful shutdown complete, all tasks finished")
        else:
            logger.warning(
                "Graceful shutdown timeout (%ss) exceeded, %d task(s) "
                "still in-flight",
                timeout,
                self.in_flight_count,
            )

        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False)
        return completed

    def _handle_sigterm(self, signum: int, frame: object) -> None:
        logger.info("Received SIGTERM, initiating graceful shutdown")
        self.initiate_shutdown()

        previous = self._previous_sigterm_handler
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signal.SIGTERM, signal.SIG_DFL)
            signal.raise_signal(signal.SIGTERM)

    def install_signal_handlers(self) -> None:
        """
        Install the SIGTERM handler. Safe to call multiple times.

        After draining, the previously installed handler runs so the
        process still terminates.
        """
        with self._lock:
            if self._signal_handlers_installed:
                return

            try:
                self._previous_sigterm_handler = signal.signal(
                    signal.SIGTERM,
                    self._handle_sigterm,
                )
                self._signal_handlers_installed = True
                logger.debug("SIGTERM handler installed for graceful shutdown")
            except (ValueError, OSError) as e:
                # Signal handlers can only be set in the main thread
                logger.debug(
                    "Could not install signal handler (may not be main "
                    "thread): %s",
                    e,
                )

    def reset(self) -> None:
        """Clear shutdown state and in-flight tracking. Useful for testing."""
        with self._lock:
            self._shutting_down = False
            self._in_flight.clear()
            self._idle.set()
            logger.debug("Background dispatcher reset")

    def get_status(self) -> dict[str, object]:
        with self._lock:
            return {
                "shutting_down": self._shutting_down,
                "in_flight_count": len(self._in_flight),
                "in_flight_tasks": [
                    label for label, _ in self._in_flight.values()
                ],
                "max_workers": self.max_workers,
                "shutdown_timeout": get_shutdown_timeout(),
                "signal_handlers_installed": self._signal_handlers_installed,
            }


_dispatcher: BackgroundDispatcher | None = None
_dispatcher_lock = threading.Lock()


def get_dispatcher() -> BackgroundDispatcher:
    """Get the singleton BackgroundDispatcher instance."""
    global _dispatcher

    if _dispatcher is None:
        with _dispatcher_lock:
            if _dispatcher is None:
                _dispatcher = BackgroundDispatcher()

    return _dispatcher
