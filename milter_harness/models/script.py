"""Models for scripted SMTP sessions produced by the test loader."""

from collections.abc import Sequence
from enum import StrEnum
from typing import TYPE_CHECKING

from pydantic import Field

from milter_harness.models.base import Model

if TYPE_CHECKING:
    from milter_harness.models.result import SessionResult


class StepKind(StrEnum):
    """Kinds of input steps the step driver understands."""

    HELO = "HELO"
    STARTTLS = "STARTTLS"
    AUTH = "AUTH"
    FROM = "FROM"
    TO = "TO"
    RESET = "RESET"
    HEADER = "HEADER"
    BODY = "BODY"


class DecisionStep(StrEnum):
    """SMTP stage a reply or failure is attributed to."""

    ANY = "*"
    HELO = "HELO"
    FROM = "FROM"
    TO = "TO"
    DATA = "DATA"
    EOM = "EOM"


class InputStep(Model):
    """Single instruction of a scripted session.

    `kind` is kept as a plain string so that scripts with kinds the driver
    does not know can still be represented and reported.
    """

    kind: str = Field(..., description="Step kind, see StepKind")
    arg: str = Field(default="", description="Argument for HELO and AUTH")
    addr: str = Field(default="", description="Envelope address for FROM and TO")
    data: bytes = Field(default=b"", description="Raw content for HEADER and BODY")


class ExpectedDecision(Model):
    """Decision the filter is expected to make for a script."""

    code: int = Field(..., ge=200, le=599, description="Expected SMTP status code")
    message: str | None = Field(
        default=None, description="Text the reply message must contain"
    )
    step: DecisionStep = Field(
        default=DecisionStep.ANY, description="Stage the decision must happen at"
    )

    def compare(self, result: "SessionResult") -> str | None:
        """Return a description of the mismatch, or None when result matches."""
        if result.code != self.code:
            return f"expected code {self.code}, got {result}"
        if (
            self.step != DecisionStep.ANY
            and result.step != DecisionStep.ANY
            and result.step != self.step
        ):
            return f"expected decision at {self.step}, got {result}"
        if self.message is not None and self.message not in result.message:
            return f"expected message containing {self.message!r}, got {result}"
        return None


class ScriptedTest(Model):
    """Parsed test case: ordered steps plus the expected decision."""

    __test__ = False

    steps: Sequence[InputStep] = Field(default_factory=list)
    decision: ExpectedDecision
    requires: frozenset[str] = Field(
        default_factory=frozenset,
        description="MTA tags the test needs; the test is skipped without them",
    )
