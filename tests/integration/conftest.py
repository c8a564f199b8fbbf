"""Fixtures for integration tests."""

import datetime
import socket
import ssl
import sys
import textwrap
from collections.abc import Generator
from pathlib import Path
from typing import Any, Protocol

import pytest
from aiosmtpd.controller import Controller
from aiosmtpd.smtp import SMTP, AuthResult, Envelope, LoginPassword, Session
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from milter_harness.config import MTA, HarnessConfig

USERS = {
    b"user@example.com": b"password1",
    b"user2@example.com": b"password2",
}

# Writes a shell wrapper executing program.py; no braces, the build command
# is run through str.format
BUILD_SCRIPT = """\
import os, shlex, sys
source, output = sys.argv[1:]
program = os.path.join(source, "program.py")
with open(output, "w") as f:
    f.write("#!/bin/sh\\nexec %s %s \\"$@\\"\\n" % (
        shlex.quote(sys.executable), shlex.quote(program)))
os.chmod(output, 0o755)
"""

PROGRAM_HEADER = """\
import argparse
import socket
import sys
import time

parser = argparse.ArgumentParser()
parser.add_argument("-network")
parser.add_argument("-address")
parser.add_argument("-tags", default="")
args = parser.parse_args()
print("tags:", args.tags, flush=True)
"""

SERVE = """\
port = int(args.address.rsplit(":", 1)[1])
server = socket.create_server(("127.0.0.1", port))
while True:
    conn, _ = server.accept()
    conn.close()
"""

SKIP = "sys.exit(77)\n"
CRASH = "sys.exit(3)\n"
SILENT = "time.sleep(60)\n"
DIE_LATE = "time.sleep(0.5)\nsys.exit(4)\n"


class FilterHandler:
    """aiosmtpd handler rejecting configured senders, recipients and content."""

    def __init__(self) -> None:
        self.reject_senders: set[str] = set()
        self.reject_recipients: set[str] = set()
        self.reject_data: bytes | None = None
        self.messages: list[bytes] = []

    async def handle_MAIL(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
        address: str,
        mail_options: list[str],
    ) -> str:
        if address in self.reject_senders:
            return "550 rejected"
        envelope.mail_from = address
        envelope.mail_options.extend(mail_options)
        return "250 OK"

    async def handle_RCPT(
        self,
        server: SMTP,
        session: Session,
        envelope: Envelope,
        address: str,
        rcpt_options: list[str],
    ) -> str:
        if address in self.reject_recipients:
            return "550 no such user"
        envelope.rcpt_tos.append(address)
        return "250 OK"

    async def handle_DATA(
        self, server: SMTP, session: Session, envelope: Envelope
    ) -> str:
        content = envelope.content
        assert isinstance(content, bytes)
        if self.reject_data is not None and self.reject_data in content:
            return "554 content rejected"
        self.messages.append(content)
        return "250 OK: queued"


def authenticate(
    server: SMTP,
    session: Session,
    envelope: Envelope,
    mechanism: str,
    auth_data: Any,
) -> AuthResult:
    """Accept the fixture credentials."""
    if not isinstance(auth_data, LoginPassword):
        return AuthResult(success=False, handled=False)
    success = USERS.get(auth_data.login) == auth_data.password
    return AuthResult(success=success)


class MakeProgramFn(Protocol):
    """Protocol for test program creation function."""

    def __call__(self, body: str, *, name: str = "program") -> Path:
        """Create a test program directory and return its path."""


@pytest.fixture
def free_port() -> int:
    """Return a TCP port nothing listens on."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def smtp_server(free_port: int) -> Generator[Controller]:
    """Run an aiosmtpd server with a filtering handler and PLAIN auth."""
    controller = Controller(
        FilterHandler(),
        hostname="127.0.0.1",
        port=free_port,
        authenticator=authenticate,
        auth_require_tls=False,
        enable_SMTPUTF8=True,
    )
    controller.start()
    try:
        yield controller
    finally:
        controller.stop()


@pytest.fixture
def server_tls_context(tmp_path: Path) -> ssl.SSLContext:
    """Create a server TLS context with a freshly generated self-signed certificate."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "mx.example.com")])
    now = datetime.datetime.now(datetime.UTC)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=1))
        .sign(key, hashes.SHA256())
    )
    cert_path = tmp_path / "cert.pem"
    key_path = tmp_path / "key.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(cert_path, key_path)
    return context


@pytest.fixture
def tls_server(
    free_port: int, server_tls_context: ssl.SSLContext
) -> Generator[Controller]:
    """Run an aiosmtpd server offering STARTTLS."""
    controller = Controller(
        FilterHandler(),
        hostname="127.0.0.1",
        port=free_port,
        tls_context=server_tls_context,
    )
    controller.start()
    try:
        yield controller
    finally:
        controller.stop()


@pytest.fixture
def handler(smtp_server: Controller) -> FilterHandler:
    """Return the handler of the running SMTP server."""
    return smtp_server.handler


@pytest.fixture
def mta(smtp_server: Controller) -> MTA:
    """Create MTA descriptor for the running SMTP server."""
    return MTA(name="aiosmtpd", smtp_port=smtp_server.port, tags=("auth",))


@pytest.fixture
def milter_port() -> int:
    """Return a second free port for the test program to listen on."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def config(tmp_path: Path, milter_port: int) -> HarnessConfig:
    """Create configuration building test programs with the Python interpreter."""
    return HarnessConfig(
        scratch_dir=tmp_path / "scratch",
        milter_port=milter_port,
        build_command=(sys.executable, "-c", BUILD_SCRIPT, "{source}", "{output}"),
        startup_grace=0.1,
        ready_timeout=5.0,
        port_poll_interval=0.05,
        smtp_timeout=5.0,
    )


@pytest.fixture
def make_program(tmp_path: Path) -> MakeProgramFn:
    """Return a function creating test program directories."""

    def _make(body: str, *, name: str = "program") -> Path:
        source = tmp_path / "programs" / name
        source.mkdir(parents=True)
        (source / "program.py").write_text(PROGRAM_HEADER + textwrap.dedent(body))
        return source

    return _make
