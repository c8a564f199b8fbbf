"""Runs test directories one after another and collects their outcomes."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from milter_harness.process import ExitKind, classify_exit
from milter_harness.test_case import TestState
from milter_harness.test_directory import TestDirectory, TestSkippedError

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class DirectoryResult:
    """Outcome of one test directory, for an external reporter."""

    path: Path
    status: Literal["passed", "failed", "skipped", "error"]
    states: Sequence[TestState] = ()
    message: str | None = None


@dataclass(frozen=True, kw_only=True)
class TestOrchestrator:
    """Runs test directories in sequence, isolating their failures.

    Directories run one at a time because their test programs all listen on
    the configured milter port.
    """

    __test__ = False

    async def run_directories(
        self, directories: Sequence[TestDirectory]
    ) -> Sequence[DirectoryResult]:
        """Run every directory and return one result per directory."""
        if not directories:
            log.info("No test directories provided")
            return []

        log.info("Running %d test directory(ies)...", len(directories))
        results = [await self._run_directory(directory) for directory in directories]
        log.info("Test directories completed")
        return results

    async def _run_directory(self, directory: TestDirectory) -> DirectoryResult:
        try:
            states = await directory.run()
        except TestSkippedError as e:
            log.info("DIR %s: skipped", directory.path)
            return DirectoryResult(
                path=directory.path, status="skipped", message=str(e)
            )
        except Exception as e:
            log.error("DIR %s: %s", directory.path, e, exc_info=e)
            return DirectoryResult(
                path=directory.path, status="error", message=str(e)
            )

        exit_kind = classify_exit(
            directory.exit_code, skip_exit_code=directory.config.skip_exit_code
        )
        if exit_kind is ExitKind.UNEXPECTED:
            return DirectoryResult(
                path=directory.path,
                status="failed",
                states=states,
                message=f"Test program exited with status {directory.exit_code}",
            )
        if directory.has_failed_test:
            return DirectoryResult(path=directory.path, status="failed", states=states)
        return DirectoryResult(path=directory.path, status="passed", states=states)
