"""Replay scripted SMTP sessions against a live MTA."""

import logging
import smtplib
import ssl
from collections.abc import Iterator, Sequence
from contextlib import contextmanager, suppress
from typing import Any, BinaryIO

from milter_harness.models.result import SessionResult
from milter_harness.models.script import DecisionStep, InputStep, StepKind

log = logging.getLogger(__name__)

QUEUED_CODE = 250
QUEUED_MESSAGE = "OK: queued"

# Credential fixtures the test programs are configured with
DEFAULT_PASSWORD = "password1"
SECOND_USER = "user2@example.com"
SECOND_PASSWORD = "password2"

CR, LF, DOT = b"\r\n."

# DataWriter states
_BEGIN, _BEGIN_LINE, _DATA, _CR = range(4)


class StepDriverError(Exception):
    """Raised when a script could not be driven to a decision."""

    def __init__(self, message: str, step: DecisionStep) -> None:
        super().__init__(message)
        self.step = step


class ScriptError(StepDriverError):
    """Raised for scripts that cannot be replayed as written."""


class TransportError(StepDriverError):
    """Raised for connection, TLS and I/O failures."""


class _Rejected(Exception):
    def __init__(self, result: SessionResult) -> None:
        super().__init__(str(result))
        self.result = result


def credentials_for(user: str) -> tuple[str, str]:
    """Return the PLAIN credentials used for an AUTH step argument."""
    if user == SECOND_USER:
        return user, SECOND_PASSWORD
    return user, DEFAULT_PASSWORD


class RecordingSMTP(smtplib.SMTP):
    """SMTP client that mirrors both directions into a transcript.

    Command arguments are sent as UTF-8, addresses in scripts are not
    restricted to ASCII.
    """

    command_encoding = "utf-8"

    def __init__(self, transcript: BinaryIO, **kwargs: Any) -> None:
        self.transcript = transcript
        super().__init__(**kwargs)

    def send(self, s: str | bytes) -> None:
        data = s.encode(self.command_encoding) if isinstance(s, str) else s
        self.transcript.write(data)
        super().send(s)

    def getreply(self) -> tuple[int, bytes]:
        code, message = super().getreply()
        lines = message.split(b"\n")
        for i, line in enumerate(lines):
            separator = b"-" if i < len(lines) - 1 else b" "
            self.transcript.write(b"%d%s%s\r\n" % (code, separator, line))
        return code, message


class DataWriter:
    """Writes message content inside an open DATA command.

    A bare LF becomes CRLF, a lone CR is passed through and lines starting
    with a dot are stuffed. The framing state carries over between writes,
    so a CRLF split across two writes stays a single line ending.
    """

    def __init__(self, client: smtplib.SMTP) -> None:
        self._client = client
        self._state = _BEGIN

    def write(self, data: bytes) -> None:
        out = bytearray()
        for c in data:
            if self._state == _CR:
                self._state = _BEGIN_LINE if c == LF else _DATA
            else:
                if self._state in (_BEGIN, _BEGIN_LINE):
                    self._state = _DATA
                    if c == DOT:
                        out.append(DOT)
                if c == CR:
                    self._state = _CR
                elif c == LF:
                    out.append(CR)
                    self._state = _BEGIN_LINE
            out.append(c)
        if out:
            self._client.send(bytes(out))

    def close(self) -> tuple[int, bytes]:
        """Terminate the content and return the server's reply."""
        if self._state == _BEGIN_LINE:
            terminator = b".\r\n"
        elif self._state == _CR:
            terminator = b"\n.\r\n"
        else:
            terminator = b"\r\n.\r\n"
        self._client.send(terminator)
        return self._client.getreply()


def _check(reply: tuple[int, bytes], *expected: int) -> None:
    code, message = reply
    if code not in expected:
        raise smtplib.SMTPResponseException(code, message)


def _decode(message: bytes | str) -> str:
    if isinstance(message, bytes):
        return message.decode("utf-8", errors="replace")
    return message


@contextmanager
def _attributed(step: DecisionStep) -> Iterator[None]:
    """Translate failures of the enclosed SMTP calls for the given stage."""
    try:
        yield
    except smtplib.SMTPResponseException as e:
        result = SessionResult(
            code=e.smtp_code, message=_decode(e.smtp_error), step=step
        )
        raise _Rejected(result) from e
    except UnicodeError as e:
        raise ScriptError(f"cannot encode step argument: {e}", step) from e
    except OSError as e:
        # smtplib.SMTPException derives from OSError
        raise TransportError(str(e) or type(e).__name__, step) from e


def _insecure_tls_context() -> ssl.SSLContext:
    # The MTAs under test present self-signed certificates
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class SmtpStepDriver:
    """Drives a scripted SMTP session and reports the decision reached."""

    def __init__(
        self,
        transcript: BinaryIO,
        *,
        host: str = "127.0.0.1",
        timeout: float | None = None,
    ) -> None:
        self.transcript = transcript
        self.host = host
        self.timeout = timeout

    def send(self, steps: Sequence[InputStep], port: int) -> SessionResult:
        """Replay steps against the SMTP server listening on port.

        Returns:
            The reply that ended the session. Rejections by the server are
            results, not errors.

        Raises:
            TransportError: On connection, TLS or I/O failures
            ScriptError: On unknown steps or scripts without a BODY step

        """
        client = self._connect(port)
        try:
            return self._replay(client, steps)
        except _Rejected as e:
            log.debug("Session on port %d rejected: %s", port, e.result)
            return e.result
        finally:
            client.close()

    def _connect(self, port: int) -> RecordingSMTP:
        kwargs: dict[str, Any] = {"local_hostname": "localhost"}
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        client = RecordingSMTP(self.transcript, **kwargs)
        try:
            client.connect(self.host, port)
        except OSError as e:
            client.close()
            raise TransportError(
                f"Cannot connect to {self.host}:{port}: {e}", DecisionStep.ANY
            ) from e
        return client

    def _replay(
        self, client: RecordingSMTP, steps: Sequence[InputStep]
    ) -> SessionResult:
        data: DataWriter | None = None

        for step in steps:
            match step.kind:
                case StepKind.HELO:
                    with _attributed(DecisionStep.HELO):
                        client.local_hostname = step.arg
                        if client.ehlo()[0] != 250:
                            _check(client.helo(), 250)
                case StepKind.STARTTLS:
                    with _attributed(DecisionStep.ANY):
                        client.starttls(context=_insecure_tls_context())
                case StepKind.AUTH:
                    with _attributed(DecisionStep.ANY):
                        client.ehlo_or_helo_if_needed()
                        client.user, client.password = credentials_for(step.arg)
                        client.auth("PLAIN", client.auth_plain)
                case StepKind.FROM:
                    with _attributed(DecisionStep.FROM):
                        client.ehlo_or_helo_if_needed()
                        _check(client.mail(step.addr), 250)
                case StepKind.TO:
                    with _attributed(DecisionStep.TO):
                        _check(client.rcpt(step.addr), 250, 251)
                case StepKind.RESET:
                    with _attributed(DecisionStep.ANY):
                        _check(client.rset(), 250)
                case StepKind.HEADER:
                    with _attributed(DecisionStep.DATA):
                        _check(client.docmd("DATA"), 354)
                    data = DataWriter(client)
                    with _attributed(DecisionStep.ANY):
                        data.write(step.data)
                case StepKind.BODY:
                    if data is None:
                        raise ScriptError("body step without header", DecisionStep.ANY)
                    with _attributed(DecisionStep.ANY):
                        data.write(step.data)
                    with _attributed(DecisionStep.EOM):
                        _check(data.close(), 250)
                    with suppress(OSError):
                        client.quit()
                    return SessionResult(
                        code=QUEUED_CODE, message=QUEUED_MESSAGE, step=DecisionStep.EOM
                    )
                case _:
                    raise ScriptError(f"unknown step {step.kind}", DecisionStep.ANY)

        raise ScriptError("incomplete input sequence", DecisionStep.EOM)
