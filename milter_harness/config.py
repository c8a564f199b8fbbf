"""Configuration for the milter test harness."""

import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, Field

# Exit status a test program uses to opt out (automake convention)
DEFAULT_SKIP_EXIT_CODE = 77


class HarnessConfig(BaseModel):
    """Settings shared by all test directories of a run."""

    scratch_dir: Path
    milter_port: int = Field(..., gt=0, lt=65536)
    host: str = "127.0.0.1"
    build_command: Sequence[str] = ("go", "build", "-o", "{output}", ".")
    startup_grace: float = Field(default=1.0, ge=0)
    ready_timeout: float = Field(default=10.0, gt=0)
    port_poll_interval: float = Field(default=0.1, gt=0)
    # None keeps SMTP exchanges unbounded
    smtp_timeout: float | None = Field(default=None, gt=0)
    skip_exit_code: int = DEFAULT_SKIP_EXIT_CODE


@dataclass(kw_only=True, eq=False)
class MTA:
    """Mail transfer agent flavour the test programs are run against."""

    name: str
    smtp_port: int
    tags: Sequence[str] = ()
    _failed_test: bool = field(default=False, init=False, repr=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    def mark_failed_test(self) -> None:
        """Record that a test against this MTA failed."""
        with self._lock:
            self._failed_test = True

    @property
    def has_failed_test(self) -> bool:
        with self._lock:
            return self._failed_test
