"""
Shared pytest fixtures and utilities for the IMAP backup tests.
"""

import io
import os
import shutil
import ssl
import subprocess
import sys
import tarfile
from contextlib import contextmanager

import pytest
import zstandard

# Ensure src/tools are in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../tools")))

from mock_imap_server import start_server_thread

from imap_backup.config import ConnectionConfig, Credentials, SecurityMode, TrustPolicy


def make_message(subject, body="Hello", sender="sender@example.com"):
    """Build a small RFC 5322 message as bytes."""
    return (
        f"From: {sender}\r\nTo: user@example.com\r\nSubject: {subject}\r\n"
        f"Message-ID: <{subject.replace(' ', '-')}@example.com>\r\n\r\n{body}\r\n"
    ).encode("utf-8")


def plain_config(port, **kwargs):
    kwargs.setdefault("security", SecurityMode.PLAIN)
    kwargs.setdefault("timeout", 5)
    return ConnectionConfig(host="localhost", port=port, **kwargs)


def credentials(user="user", password="pass"):
    return Credentials(user, password)


def read_archive(path):
    """Decompress a .tar.zst archive and return {name: (TarInfo, bytes | None)} in member order."""
    with open(path, "rb") as f:
        raw = zstandard.ZstdDecompressor().decompressobj().decompress(f.read())
    members = {}
    with tarfile.open(fileobj=io.BytesIO(raw), mode="r:") as tar:
        for info in tar.getmembers():
            data = tar.extractfile(info).read() if info.isfile() else None
            members[info.name] = (info, data)
    return members


@pytest.fixture
def single_mock_server():
    """
    Factory for mock IMAP servers. Keyword arguments are passed to MockIMAPServer
    (noselect, users, fail_select, expunged, ssl_context, ...).
    """
    servers = []

    def _create(initial_data=None, **kwargs):
        server, actual_port = start_server_thread(0, initial_data, **kwargs)
        servers.append(server)
        return server, actual_port

    yield _create

    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture(scope="session")
def tls_certificate(tmp_path_factory):
    """Self-signed certificate for localhost, generated with the openssl binary."""
    openssl = shutil.which("openssl")
    if not openssl:
        pytest.skip("openssl binary not available")
    directory = tmp_path_factory.mktemp("tls")
    cert = directory / "cert.pem"
    key = directory / "key.pem"
    result = subprocess.run(
        [
            openssl,
            "req",
            "-x509",
            "-newkey",
            "rsa:2048",
            "-nodes",
            "-keyout",
            str(key),
            "-out",
            str(cert),
            "-days",
            "1",
            "-subj",
            "/CN=localhost",
            "-addext",
            "subjectAltName=DNS:localhost,IP:127.0.0.1",
        ],
        capture_output=True,
    )
    if result.returncode != 0:
        pytest.skip(f"openssl could not create a certificate: {result.stderr.decode(errors='replace')}")
    return str(cert), str(key)


@pytest.fixture
def server_ssl_context(tls_certificate):
    cert, key = tls_certificate
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(cert, key)
    return context


@contextmanager
def temp_env(env):
    original = os.environ.copy()
    os.environ.clear()
    os.environ.update(env)
    try:
        yield
    finally:
        os.environ.clear()
        os.environ.update(original)


__all__ = [
    "single_mock_server",
    "tls_certificate",
    "server_ssl_context",
    "temp_env",
    "make_message",
    "plain_config",
    "credentials",
    "read_archive",
    "TrustPolicy",
]
