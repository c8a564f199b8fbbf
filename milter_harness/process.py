"""Build test programs and classify how they exited."""

import asyncio
import logging
import signal
from collections.abc import Sequence
from enum import StrEnum
from pathlib import Path

log = logging.getLogger(__name__)


class ExitKind(StrEnum):
    """Buckets for the exit status of a test program."""

    SKIP = "skip"
    CLEAN = "clean"
    UNEXPECTED = "unexpected"


class BuildError(RuntimeError):
    """Raised when a test program cannot be built."""


class SubprocessExitedError(RuntimeError):
    """Raised when a test program exits before it became ready."""

    def __init__(self, path: Path, returncode: int | None) -> None:
        super().__init__(f"Test program for {path} exited with status {returncode}")
        self.path = path
        self.returncode = returncode


def classify_exit(returncode: int | None, *, skip_exit_code: int) -> ExitKind:
    """Classify a subprocess return code.

    A program stopped by the harness is terminated with SIGTERM, which is
    reported as a negative return code by asyncio.
    """
    if returncode == skip_exit_code:
        return ExitKind.SKIP
    if returncode in (0, -signal.SIGTERM):
        return ExitKind.CLEAN
    return ExitKind.UNEXPECTED


async def build_program(source: Path, output: Path, command: Sequence[str]) -> None:
    """Build the test program in source into the executable output.

    Args:
        source: Directory holding the test program sources
        output: Path of the executable to produce
        command: Build command, `{source}` and `{output}` are substituted

    Raises:
        BuildError: If the build command fails

    """
    argv = [arg.format(source=source, output=output) for arg in command]
    log.debug("Building %s: %s", source, " ".join(argv))

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=source,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        raise BuildError(f"Cannot run build command for {source}: {e}") from e

    stdout, _ = await process.communicate()

    if process.returncode != 0:
        raise BuildError(
            f"Build of {source} failed: {stdout.decode(errors='replace').strip()}"
        )
