from __future__ import annotations

import time
import unittest

from django.test import override_settings

from django_autoheal.conf import DEFAULT_EXECUTION_TIMEOUT
from django_autoheal.conf import get_execution_timeout
from django_autoheal.exceptions import ExecutionTimeoutError
from django_autoheal.timeouts import TimeoutFlag
from django_autoheal.timeouts import execution_timeout


class TestTimeoutFlag(unittest.TestCase):
    """Tests for the TimeoutFlag helper class."""

    def test_initial_state_is_not_timed_out(self):
        """Test that flag starts in not-timed-out state."""
        flag = TimeoutFlag()
        self.assertFalse(flag.is_timed_out())

    def test_set_timed_out_changes_state(self):
        """Test that set_timed_out() changes the flag state."""
        flag = TimeoutFlag()
        flag.set_timed_out()
        self.assertTrue(flag.is_timed_out())

    def test_raise_if_timed_out(self):
        """Test that a fired flag raises with the run details."""
        flag = TimeoutFlag(30, "abc123")
        flag.raise_if_timed_out()

        flag.set_timed_out()
        with self.assertRaises(ExecutionTimeoutError) as ctx:
            flag.raise_if_timed_out()

        self.assertEqual(ctx.exception.timeout_seconds, 30)
        self.assertEqual(ctx.exception.commit_sha, "abc123")


class TestExecutionTimeoutContextManager(unittest.TestCase):
    """Tests for the execution_timeout context manager."""

    def test_normal_execution_completes(self):
        """Test that normal execution completes without error."""
        with execution_timeout(10, "abc123") as flag:
            result = 1 + 1
            self.assertFalse(flag.is_timed_out())

        self.assertEqual(result, 2)

    def test_timeout_flag_is_set_after_timeout(self):
        """Test that timeout flag is set after timeout expires."""
        with execution_timeout(1, "abc123") as flag:
            time.sleep(1.5)
            self.assertTrue(flag.is_timed_out())
            with self.assertRaises(ExecutionTimeoutError):
                flag.raise_if_timed_out()

    def test_exit_after_timeout_does_not_raise(self):
        """Test that leaving the context keeps the body's outcome."""
        with execution_timeout(1, "abc123"):
            time.sleep(1.5)

    def test_zero_timeout_disables_timer(self):
        """Test that timeout of 0 disables the timer."""
        with execution_timeout(0, "abc123") as flag:
            time.sleep(0.1)
            self.assertFalse(flag.is_timed_out())


class TestGetExecutionTimeout(unittest.TestCase):
    """Tests for the get_execution_timeout function."""

    @override_settings()
    def test_returns_default_when_not_configured(self):
        """Test that default timeout is returned when not configured."""
        from django.conf import settings

        del settings.AUTOHEAL_EXECUTION_TIMEOUT
        self.assertEqual(get_execution_timeout(), DEFAULT_EXECUTION_TIMEOUT)

    @override_settings(AUTOHEAL_EXECUTION_TIMEOUT=60)
    def test_returns_configured_value(self):
        """Test that configured timeout is returned."""
        self.assertEqual(get_execution_timeout(), 60)


class TestExecutionTimeoutError(unittest.TestCase):
    """Tests for the ExecutionTimeoutError exception."""

    def test_stores_timeout_info(self):
        """Test that exception stores timeout information."""
        error = ExecutionTimeoutError(
            "Test timeout",
            timeout_seconds=30,
            commit_sha="abc123",
        )

        self.assertEqual(error.timeout_seconds, 30)
        self.assertEqual(error.commit_sha, "abc123")
        self.assertIn("Test timeout", str(error))


if __name__ == "__main__":
    unittest.main()
