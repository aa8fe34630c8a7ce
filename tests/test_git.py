from __future__ import annotations

import subprocess
from unittest import TestCase
from unittest.mock import patch

from django.test import override_settings

from django_autoheal.git import GitCommitter


def _completed(stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=0, stdout=stdout)


class TestGitCommitter(TestCase):
    def _commands(self, mock_run):
        return [call.args[0] for call in mock_run.call_args_list]

    @patch("django_autoheal.git.subprocess.run")
    def test_commit_and_push(self, mock_run):
        """Changes are staged, committed and pushed in order."""
        mock_run.side_effect = [
            _completed(),
            _completed(" M src/app.py\n"),
            _completed(),
            _completed(),
        ]

        result = GitCommitter().commit_and_push("fix: thing", "/repo")

        self.assertTrue(result.success)
        self.assertTrue(result.committed)
        self.assertEqual(
            self._commands(mock_run),
            [
                ["git", "add", "-A"],
                ["git", "status", "--porcelain"],
                ["git", "commit", "-m", "fix: thing"],
                ["git", "push"],
            ],
        )
        self.assertEqual(mock_run.call_args.kwargs["cwd"], "/repo")

    @patch("django_autoheal.git.subprocess.run")
    def test_clean_tree_is_noop(self, mock_run):
        """Nothing to commit is a success without a commit."""
        mock_run.side_effect = [_completed(), _completed("")]

        result = GitCommitter().commit_and_push("fix: thing", "/repo")

        self.assertTrue(result.success)
        self.assertFalse(result.committed)
        self.assertEqual(mock_run.call_count, 2)

    @patch("django_autoheal.git.subprocess.run")
    def test_push_failure(self, mock_run):
        """A failing push is reported, not raised."""
        mock_run.side_effect = [
            _completed(),
            _completed(" M src/app.py\n"),
            _completed(),
            subprocess.CalledProcessError(
                1,
                ["git", "push"],
                stderr="rejected",
            ),
        ]

        result = GitCommitter().commit_and_push("fix: thing", "/repo")

        self.assertFalse(result.success)
        self.assertIn("rejected", result.error)

    @patch("django_autoheal.git.subprocess.run")
    def test_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(["git", "add"], 5)

        result = GitCommitter(timeout_seconds=5).commit_and_push("m", "/r")

        self.assertFalse(result.success)
        self.assertEqual(result.error, "timeout")
        self.assertEqual(mock_run.call_args.kwargs["timeout"], 5)

    @patch("django_autoheal.git.subprocess.run")
    def test_missing_git_binary(self, mock_run):
        mock_run.side_effect = FileNotFoundError("git")

        result = GitCommitter().commit_and_push("m", "/r")

        self.assertFalse(result.success)
        self.assertIn("Failed to run git", result.error)

    @override_settings(
        AUTOHEAL_GIT_AUTHOR_NAME="Autoheal Bot",
        AUTOHEAL_GIT_AUTHOR_EMAIL="bot@example.com",
    )
    @patch("django_autoheal.git.subprocess.run")
    def test_identity_env(self, mock_run):
        """The configured identity is used for the commit."""
        mock_run.side_effect = [
            _completed(),
            _completed(" M a.py\n"),
            _completed(),
            _completed(),
        ]

        GitCommitter().commit_and_push("m", "/r")

        commit_env = mock_run.call_args_list[2].kwargs["env"]
        self.assertEqual(commit_env["GIT_AUTHOR_NAME"], "Autoheal Bot")
        self.assertEqual(commit_env["GIT_COMMITTER_EMAIL"], "bot@example.com")
        self.assertIsNone(mock_run.call_args_list[0].kwargs["env"])

    @patch("django_autoheal.git.subprocess.run")
    def test_push_to_configured_branch(self, mock_run):
        mock_run.side_effect = [
            _completed(),
            _completed(" M a.py\n"),
            _completed(),
            _completed(),
        ]

        GitCommitter(remote="origin", branch="main").commit_and_push(
            "m",
            "/r",
        )

        self.assertEqual(
            self._commands(mock_run)[-1],
            ["git", "push", "origin", "HEAD:main"],
        )

    @patch("django_autoheal.git.subprocess.run")
    def test_branch_without_remote_pushes_to_origin(self, mock_run):
        mock_run.side_effect = [
            _completed(),
            _completed(" M a.py\n"),
            _completed(),
            _completed(),
        ]

        with override_settings(
            AUTOHEAL_GIT_REMOTE=None,
            AUTOHEAL_GIT_BRANCH="autoheal",
        ):
            GitCommitter().commit_and_push("m", "/r")

        self.assertEqual(
            self._commands(mock_run)[-1],
            ["git", "push", "origin", "HEAD:autoheal"],
        )

    @patch("django_autoheal.git.subprocess.run")
    def test_head_sha(self, mock_run):
        mock_run.return_value = _completed("abc123\n")

        self.assertEqual(GitCommitter().head_sha("/r"), "abc123")

    @patch("django_autoheal.git.subprocess.run")
    def test_head_sha_failure_returns_none(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(128, ["git"])

        self.assertIsNone(GitCommitter().head_sha("/r"))
