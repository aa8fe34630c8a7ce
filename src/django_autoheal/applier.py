from __future__ import annotations

import logging
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path
from typing import Iterable

from django_autoheal.exceptions import ApplyError
from django_autoheal.llm.base import FileChange

logger = logging.getLogger(__name__)


@dataclass
class ApplyFailure:
    path: str
    error: str


@dataclass
class ApplyResult:
    """Outcome of applying a batch of file changes."""

    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[ApplyFailure] = field(default_factory=list)
    dry_run: bool = False

    @property
    def succeeded(self) -> bool:
        """True if at least one file was written, or nothing failed."""
        return bool(self.applied) or not self.failures

    def summary(self) -> str:
        lines = [f"applied: {path}" for path in self.applied]
        lines.extend(f"skipped: {path}" for path in self.skipped)
        lines.extend(
            f"failed: {failure.path} ({failure.error})"
            for failure in self.failures
        )
        return "\n".join(lines)


class FixApplier:
    """
    Applies suggested file changes to a repository working tree.

    Safety policy:
        - ``delete`` actions are never honored; they are logged and
          reported as skipped, with or without ``dry_run``.
        - Paths resolving outside the working directory are refused.
        - With ``dry_run`` the filesystem is never touched.

    Each change is attempted independently; a failing write is collected
    into the result and the rest of the batch still runs.
    """

    def __init__(self, working_dir: Path | str) -> None:
        self.working_dir = Path(working_dir)

    def _resolve(self, path: str) -> Path:
        root = self.working_dir.resolve()
        target = (root / path).resolve()
        if target != root and root not in target.parents:
            raise ApplyError(path, "path escapes the working directory")
        return target

    def apply(
        self,
        changes: Iterable[FileChange],
        dry_run: bool = False,
    ) -> ApplyResult:
        """
        Apply file changes.

        Args:
            changes: File changes from a fix suggestion
            dry_run: Only log what would happen

        Returns:
            ApplyResult listing applied, skipped and failed paths
        """
        result = ApplyResult(dry_run=dry_run)

        for change in changes:
            logger.info("%s %s", change.action.upper(), change.path)

            if change.action == "delete":
                logger.info("Delete skipped for safety: %s", change.path)
                result.skipped.append(change.path)
                continue

            if change.content is None:
                logger.info("No content supplied, skipping: %s", change.path)
                result.skipped.append(change.path)
                continue

            try:
                target = self._resolve(change.path)
                if dry_run:
                    logger.info(
                        "Dry run, would write %d bytes to %s",
                        len(change.content),
                        target,
                    )
                    result.skipped.append(change.path)
                    continue

                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(change.content, encoding="utf-8")
                result.applied.append(change.path)
            except (ApplyError, OSError) as e:
                logger.warning(
                    "Failed to apply change: path=%s, error=%s",
                    change.path,
                    e,
                )
                result.failures.append(ApplyFailure(change.path, str(e)))

        logger.info(
            "Applied fix: applied=%d, skipped=%d, failed=%d, dry_run=%s",
            len(result.applied),
            len(result.skipped),
            len(result.failures),
            dry_run,
        )
        return result
