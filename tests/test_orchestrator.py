from __future__ import annotations

import tempfile
import unittest
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import MagicMock
from unittest.mock import patch

from django.test import TestCase
from django.test import override_settings

from django_autoheal.applier import FixApplier
from django_autoheal.exceptions import CollaboratorTimeout
from django_autoheal.exceptions import ConfigurationError
from django_autoheal.exceptions import ExecutionTimeoutError
from django_autoheal.exceptions import StoreUnavailable
from django_autoheal.git import CommitResult
from django_autoheal.github import FailedJob
from django_autoheal.github import FailedRunDetails
from django_autoheal.github import FailedStep
from django_autoheal.llm import FixSuggestion
from django_autoheal.models import RetryAttemptStatus
from django_autoheal.orchestrator import AutoHealOrchestrator
from django_autoheal.orchestrator import HealContext
from django_autoheal.orchestrator import HealOutcome
from django_autoheal.orchestrator import build_commit_message
from django_autoheal.orchestrator import build_error_message
from django_autoheal.orchestrator import derive_scope
from django_autoheal.orchestrator import extract_file_paths
from django_autoheal.orchestrator import get_backoff_delay
from django_autoheal.store import RetryStateStore
from django_autoheal.timeouts import TimeoutFlag

OWNER = "acme"
REPO = "widgets"
COMMIT = "abc123def4567890"
BROKEN_SOURCE = "def add(a, b):\n    return a - b\n"
FIXED_SOURCE = "def add(a, b):\n    return a + b\n"


def make_fix(confidence=0.9, files=None):
    if files is None:
        files = [
            {
                "path": "src/app.py",
                "action": "modify",
                "content": FIXED_SOURCE,
            }
        ]
    return FixSuggestion.model_validate(
        {
            "analysis": "add() subtracts",
            "rootCause": "Wrong operator in add()",
            "suggestedFix": {"description": "Use +", "files": files},
            "confidence": confidence,
        }
    )


def failed_run():
    return FailedRunDetails(
        conclusion="failure",
        failed_jobs=[
            FailedJob(
                name="test",
                conclusion="failure",
                steps=[FailedStep("Run tests", 3, "failure")],
            )
        ],
    )


class OrchestratorTestCase(TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.workspace = Path(self._tmp.name)
        self.checkout = self.workspace / OWNER / REPO
        (self.checkout / "src").mkdir(parents=True)
        self.source_file = self.checkout / "src" / "app.py"
        self.source_file.write_text(BROKEN_SOURCE)

        settings_override = override_settings(
            AUTOHEAL_WORKSPACE_ROOT=str(self.workspace),
            AUTOHEAL_MAX_RETRIES=3,
            AUTOHEAL_MIN_CONFIDENCE=0.5,
        )
        settings_override.enable()
        self.addCleanup(settings_override.disable)

        self.store = RetryStateStore()
        self.github = MagicMock()
        self.github.get_failed_run_details.return_value = failed_run()
        self.github.get_workflow_run_logs.return_value = "FAILED tests"
        self.fix_client = MagicMock()
        self.fix_client.generate_fix.return_value = make_fix()
        self.committer = MagicMock()
        self.committer.head_sha.side_effect = ["before-sha", "after-sha"]
        self.committer.commit_and_push.return_value = CommitResult(
            success=True,
            committed=True,
        )
        self.sleep = MagicMock()
        self.orchestrator = AutoHealOrchestrator(
            self.store,
            github_client=self.github,
            fix_client=self.fix_client,
            committer=self.committer,
            sleep=self.sleep,
        )

    def context(self, **kwargs):
        defaults = {
            "repo_owner": OWNER,
            "repo_name": REPO,
            "commit_sha": COMMIT,
            "workflow_run_id": 42,
            "installation_id": 7,
        }
        defaults.update(kwargs)
        return HealContext(**defaults)

    def attempt(self):
        return self.store.get(COMMIT, OWNER, REPO)

    def fixed_timeout_flag(self, flag):
        @contextmanager
        def fake_timeout(timeout_seconds, commit_sha):
            yield flag

        return patch(
            "django_autoheal.orchestrator.execution_timeout",
            fake_timeout,
        )


class TestTrigger(OrchestratorTestCase):
    def test_first_failure_is_healed(self):
        """A confident fix is applied, committed and recorded."""
        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.HEALED)
        self.assertFalse(result.failed)
        self.assertEqual(self.source_file.read_text(), FIXED_SOURCE)

        attempt = self.attempt()
        self.assertEqual(attempt.attempt_count, 1)
        self.assertEqual(attempt.status, RetryAttemptStatus.SUCCESS)

        history = self.store.heal_history(attempt)
        self.assertEqual(len(history), 1)
        self.assertTrue(history[0].success)
        self.assertEqual(history[0].commit_sha_before, "before-sha")
        self.assertEqual(history[0].commit_sha_after, "after-sha")
        self.assertIn("Run tests", history[0].error_message)
        self.assertIn("## Error Message", history[0].fix_prompt)

        message = self.committer.commit_and_push.call_args.args[0]
        self.assertTrue(message.startswith("fix(src): auto-heal"))
        self.assertIn("90% confidence", message)
        self.sleep.assert_not_called()

    def test_fetches_failed_jobs_and_logs(self):
        self.orchestrator.trigger(self.context())

        self.github.get_failed_run_details.assert_called_once_with(
            7,
            OWNER,
            REPO,
            42,
        )
        self.github.resolve_installation.assert_not_called()
        error_message, _, fix_context = (
            self.fix_client.generate_fix.call_args.args
        )
        self.assertEqual(
            error_message,
            'Job "test" failed at steps: Run tests',
        )
        self.assertIn("FAILED tests", fix_context)

    def test_resolves_missing_installation(self):
        self.github.resolve_installation.return_value = 99

        self.orchestrator.trigger(self.context(installation_id=None))

        self.github.resolve_installation.assert_called_once_with(OWNER, REPO)
        self.assertEqual(
            self.github.get_failed_run_details.call_args.args[0],
            99,
        )

    def test_log_download_failure_is_tolerated(self):
        """Missing logs do not stop the heal run."""
        from django_autoheal.exceptions import GitHubAPIError

        self.github.get_workflow_run_logs.side_effect = GitHubAPIError(
            "gone",
            status_code=410,
        )

        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.HEALED)

    def test_healed_commit_is_skipped(self):
        """A commit already healed is never attempted again."""
        self.orchestrator.trigger(self.context())

        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.SKIPPED)
        self.assertEqual(self.fix_client.generate_fix.call_count, 1)
        self.assertEqual(self.attempt().attempt_count, 1)

    def test_retries_exhausted(self):
        """After the limit no provider call happens and the row is closed."""
        self.fix_client.generate_fix.return_value = make_fix(confidence=0.1)

        outcomes = [
            self.orchestrator.trigger(self.context()).outcome
            for _ in range(4)
        ]

        self.assertEqual(
            outcomes,
            [HealOutcome.LOW_CONFIDENCE] * 3 + [HealOutcome.EXHAUSTED],
        )
        self.assertEqual(self.fix_client.generate_fix.call_count, 3)
        attempt = self.attempt()
        self.assertEqual(attempt.attempt_count, 3)
        self.assertEqual(attempt.status, RetryAttemptStatus.EXHAUSTED)

        result = self.orchestrator.trigger(self.context())
        self.assertEqual(
            result.error,
            "Max retries reached for abc123d (3 attempts)",
        )

    def test_no_fix_available(self):
        self.fix_client.generate_fix.return_value = make_fix(files=[])

        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.NO_FIX)
        self.assertTrue(result.failed)
        self.assertEqual(
            self.attempt().last_error,
            "Fix suggestion contains no file changes",
        )
        self.committer.commit_and_push.assert_not_called()

    def test_low_confidence(self):
        """Fixes below the confidence threshold are not applied."""
        self.fix_client.generate_fix.return_value = make_fix(confidence=0.3)

        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.LOW_CONFIDENCE)
        self.assertEqual(self.source_file.read_text(), BROKEN_SOURCE)
        self.assertEqual(self.attempt().status, RetryAttemptStatus.HEALING)
        history = self.store.heal_history(self.attempt())
        self.assertFalse(history[0].success)

    @override_settings(AUTOHEAL_DRY_RUN=True)
    def test_dry_run(self):
        """Dry runs never write files or call git."""
        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.DRY_RUN)
        self.assertEqual(self.source_file.read_text(), BROKEN_SOURCE)
        self.committer.commit_and_push.assert_not_called()
        self.assertEqual(self.attempt().status, RetryAttemptStatus.HEALING)

    @override_settings(AUTOHEAL_AUTO_APPLY=False)
    def test_auto_apply_disabled(self):
        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.HEALED)
        self.assertEqual(self.source_file.read_text(), FIXED_SOURCE)
        self.committer.commit_and_push.assert_not_called()

    def test_git_failure(self):
        self.committer.commit_and_push.return_value = CommitResult(
            success=False,
            error="push rejected",
        )

        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.GIT_FAILED)
        attempt = self.attempt()
        self.assertEqual(attempt.last_error, "push rejected")
        self.assertEqual(attempt.status, RetryAttemptStatus.HEALING)
        self.assertFalse(self.store.heal_history(attempt)[0].success)

    def test_apply_failure(self):
        self.fix_client.generate_fix.return_value = make_fix(
            files=[
                {
                    "path": "../../escape.py",
                    "action": "create",
                    "content": "x = 1\n",
                }
            ]
        )

        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.APPLY_FAILED)
        self.committer.commit_and_push.assert_not_called()

    def test_collaborator_timeout(self):
        """Timeouts are recorded as failed history with last_error timeout."""
        self.fix_client.generate_fix.side_effect = CollaboratorTimeout(
            "anthropic",
            120,
        )

        with self.assertRaises(CollaboratorTimeout):
            self.orchestrator.trigger(self.context())

        attempt = self.attempt()
        self.assertEqual(attempt.last_error, "timeout")
        self.assertEqual(attempt.attempt_count, 1)
        history = self.store.heal_history(attempt)
        self.assertFalse(history[0].success)

    def test_run_timeout_leaves_tree_untouched(self):
        """A run that overruns before applying writes nothing."""
        flag = TimeoutFlag(1, COMMIT)

        def slow_fix(*args, **kwargs):
            flag.set_timed_out()
            return make_fix()

        self.fix_client.generate_fix.side_effect = slow_fix

        with self.fixed_timeout_flag(flag):
            with self.assertRaises(ExecutionTimeoutError):
                self.orchestrator.trigger(self.context())

        self.assertEqual(self.source_file.read_text(), BROKEN_SOURCE)
        self.committer.commit_and_push.assert_not_called()
        attempt = self.attempt()
        self.assertEqual(attempt.last_error, "timeout")
        self.assertFalse(self.store.heal_history(attempt)[0].success)

    def test_applied_fix_is_always_committed(self):
        """Once files are written the commit follows, even past timeout."""
        flag = TimeoutFlag(1, COMMIT)

        class SlowApplier(FixApplier):
            def apply(self, changes, dry_run=False):
                result = super().apply(changes, dry_run=dry_run)
                flag.set_timed_out()
                return result

        self.orchestrator.applier_class = SlowApplier

        with self.fixed_timeout_flag(flag):
            result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.HEALED)
        self.committer.commit_and_push.assert_called_once()

    def test_two_file_fix_commit_message(self):
        """Every applied file is written and the message carries 80%."""
        self.fix_client.generate_fix.return_value = make_fix(
            confidence=0.8,
            files=[
                {
                    "path": "src/app.py",
                    "action": "modify",
                    "content": FIXED_SOURCE,
                },
                {
                    "path": "src/helpers.py",
                    "action": "create",
                    "content": "HELPER = 1\n",
                },
            ],
        )

        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.HEALED)
        self.assertEqual(self.source_file.read_text(), FIXED_SOURCE)
        self.assertEqual(
            (self.checkout / "src" / "helpers.py").read_text(),
            "HELPER = 1\n",
        )
        message = self.committer.commit_and_push.call_args.args[0]
        self.assertIn("80%", message)
        self.assertIn("Wrong operator in add()", message)
        self.assertTrue(message.startswith("fix(src):"))

    def test_clean_tree_counts_as_healed(self):
        """A commit step with nothing to commit is still a success."""
        self.committer.commit_and_push.return_value = CommitResult(
            success=True,
            committed=False,
        )

        result = self.orchestrator.trigger(self.context())

        self.assertEqual(result.outcome, HealOutcome.HEALED)
        attempt = self.attempt()
        self.assertEqual(attempt.status, RetryAttemptStatus.SUCCESS)
        self.assertTrue(self.store.heal_history(attempt)[0].success)

    def test_store_unavailable_stops_before_collaborators(self):
        with patch.object(
            self.store,
            "claim_attempt",
            side_effect=StoreUnavailable("down"),
        ):
            with self.assertRaises(StoreUnavailable):
                self.orchestrator.trigger(self.context())

        self.github.get_failed_run_details.assert_not_called()
        self.fix_client.generate_fix.assert_not_called()

    def test_missing_checkout(self):
        with self.assertRaises(ConfigurationError):
            self.orchestrator.trigger(self.context(repo_name="unknown"))

        attempt = self.store.get(COMMIT, OWNER, "unknown")
        self.assertEqual(len(self.store.heal_history(attempt)), 1)

    @override_settings(
        AUTOHEAL_BACKOFF_BASE_SECONDS=10,
        AUTOHEAL_BACKOFF_MAX_SECONDS=600,
    )
    def test_backoff_before_retry(self):
        """Only retries wait before running."""
        self.fix_client.generate_fix.return_value = make_fix(confidence=0.1)

        self.orchestrator.trigger(self.context())
        self.sleep.assert_not_called()

        self.orchestrator.trigger(self.context())
        self.sleep.assert_called_once_with(20)


class TestManualTrigger(OrchestratorTestCase):
    def test_manual_trigger_reads_mentioned_files(self):
        """File paths in the error message are sent to the provider."""
        result = self.orchestrator.manual_trigger(
            OWNER,
            REPO,
            COMMIT,
            "AssertionError in src/app.py:2: expected 3, got -1",
        )

        self.assertEqual(result.outcome, HealOutcome.HEALED)
        _, file_contents, _ = self.fix_client.generate_fix.call_args.args
        self.assertEqual(file_contents, {"src/app.py": BROKEN_SOURCE})
        self.github.get_failed_run_details.assert_not_called()

    def test_manual_trigger_does_not_count(self):
        """Manual runs bypass the retry counter."""
        self.orchestrator.manual_trigger(OWNER, REPO, COMMIT, "boom")

        self.assertEqual(self.attempt().attempt_count, 0)

    def test_manual_dry_run(self):
        result = self.orchestrator.manual_trigger(
            OWNER,
            REPO,
            COMMIT,
            "boom",
            dry_run=True,
        )

        self.assertEqual(result.outcome, HealOutcome.DRY_RUN)
        self.assertEqual(self.source_file.read_text(), BROKEN_SOURCE)


class TestHelpers(unittest.TestCase):
    def test_build_error_message(self):
        jobs = [
            FailedJob(
                "test",
                "failure",
                [
                    FailedStep("Install", 2, "failure"),
                    FailedStep("Run tests", 3, "failure"),
                ],
            ),
            FailedJob("lint", "failure"),
        ]

        self.assertEqual(
            build_error_message(jobs),
            'Job "test" failed at steps: Install, Run tests\n'
            'Job "lint" failed',
        )

    def test_extract_file_paths(self):
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp)
            (root / "src").mkdir()
            (root / "src" / "app.py").write_text("")
            (root / "lib.ts").write_text("")
            text = (
                "  at src/app.py:10:5\n"
                "Error in ./lib.ts\n"
                "Cannot find 'missing.py'\n"
                "again src/app.py"
            )

            paths = extract_file_paths(text, root)

        self.assertEqual(paths, ["src/app.py", "lib.ts"])

    def test_extract_file_paths_stays_inside_checkout(self):
        with tempfile.TemporaryDirectory() as tmp:
            paths = extract_file_paths("at /etc/passwd.py", Path(tmp))

        self.assertEqual(paths, [])

    def test_derive_scope(self):
        self.assertEqual(derive_scope(["src/app.py", "lib/x.py"]), "src")
        self.assertEqual(derive_scope(["./.github/ci.yml"]), ".github")
        self.assertEqual(derive_scope(["setup.py"]), "core")
        self.assertEqual(derive_scope([]), "core")

    def test_build_commit_message(self):
        message = build_commit_message(make_fix(0.876), ["pkg/mod.py"])

        self.assertEqual(
            message,
            "fix(pkg): auto-heal pipeline failure\n\n"
            "Wrong operator in add()\n\n"
            "Auto-generated fix with 88% confidence.\n",
        )

    @override_settings(
        AUTOHEAL_BACKOFF_BASE_SECONDS=5,
        AUTOHEAL_BACKOFF_MAX_SECONDS=30,
    )
    def test_get_backoff_delay(self):
        self.assertEqual(get_backoff_delay(1), 0)
        self.assertEqual(get_backoff_delay(2), 10)
        self.assertEqual(get_backoff_delay(3), 20)
        self.assertEqual(get_backoff_delay(4), 30)

    @override_settings(AUTOHEAL_BACKOFF_BASE_SECONDS=0)
    def test_backoff_disabled(self):
        self.assertEqual(get_backoff_delay(5), 0)
