"""Models for SMTP session outcomes."""

from dataclasses import dataclass

from milter_harness.models.script import DecisionStep


@dataclass(frozen=True, kw_only=True)
class SessionResult:
    """Terminal reply of a replayed SMTP session.

    A rejection by the filter is a valid outcome and is reported here as well;
    only transport and script faults are raised as errors by the driver.
    """

    code: int
    message: str
    step: DecisionStep

    def __str__(self) -> str:
        return f"{self.code} {self.message} ({self.step})"
