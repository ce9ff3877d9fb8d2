"""
Backup Configuration

Resolved connection settings, credentials and run policies. Values come from
command-line arguments, then a .env file, then the process environment; the
first non-empty source wins.
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass

from dotenv import dotenv_values

from imap_backup.errors import ConfigError

ENV_HOST = "IMAP_HOST"
ENV_PORT = "IMAP_PORT"
ENV_USERNAME = "IMAP_USERNAME"
ENV_PASSWORD = "IMAP_PASSWORD"
ENV_OAUTH2_CLIENT_ID = "IMAP_OAUTH2_CLIENT_ID"
ENV_OAUTH2_CLIENT_SECRET = "IMAP_OAUTH2_CLIENT_SECRET"
ENV_OUTPUT = "BACKUP_OUTPUT"

PORT_IMAPS = 993
PORT_IMAP = 143

DEFAULT_TIMEOUT = 60.0
DEFAULT_BLOCK_SIZE = 64 * 1024
DEFAULT_QUEUE_DEPTH = 16
DEFAULT_COMPRESSION_LEVEL = 3

MECHANISM_PASSWORD = "password"
MECHANISM_XOAUTH2 = "xoauth2"


class SecurityMode(enum.Enum):
    PLAIN = "plain"
    IMPLICIT_TLS = "implicit-tls"
    STARTTLS = "starttls"


class TrustPolicy(enum.Enum):
    VERIFY = "verify"
    ACCEPT_UNTRUSTED = "accept-untrusted"


class ErrorPolicy(enum.Enum):
    SKIP = "skip"
    ABORT = "abort"


@dataclass(frozen=True)
class ConnectionConfig:
    host: str
    port: int
    security: SecurityMode = SecurityMode.IMPLICIT_TLS
    trust: TrustPolicy = TrustPolicy.VERIFY
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        if not self.host:
            raise ConfigError("A host name is required")
        if not 0 < self.port < 65536:
            raise ConfigError(f"Invalid port number: {self.port}")
        if self.timeout <= 0:
            raise ConfigError(f"Timeout must be positive, got {self.timeout}")

    @property
    def encrypted(self) -> bool:
        return self.security is not SecurityMode.PLAIN


@dataclass(frozen=True)
class BackupOptions:
    """Run policies for the orchestrator and the archive writer."""

    on_mailbox_error: ErrorPolicy = ErrorPolicy.SKIP
    on_message_error: ErrorPolicy = ErrorPolicy.SKIP
    login_retries: int = 1
    block_size: int = DEFAULT_BLOCK_SIZE
    queue_depth: int = DEFAULT_QUEUE_DEPTH
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    deflate: bool = False
    debug: bool = False

    def __post_init__(self):
        if self.login_retries < 0:
            raise ConfigError(f"login_retries must be >= 0, got {self.login_retries}")
        if self.block_size < 512:
            raise ConfigError(f"block_size must be >= 512, got {self.block_size}")
        if self.queue_depth < 1:
            raise ConfigError(f"queue_depth must be >= 1, got {self.queue_depth}")


class Credentials:
    """Username and secret for one login attempt.

    The secret is kept in a mutable buffer so it can be zeroed with wipe()
    once the attempt completes. For XOAUTH2 the secret is the access token.
    """

    def __init__(self, username: str, secret: str, mechanism: str = MECHANISM_PASSWORD):
        if not username:
            raise ConfigError("Must provide a username")
        if not secret:
            raise ConfigError("Must provide a password")
        if mechanism not in (MECHANISM_PASSWORD, MECHANISM_XOAUTH2):
            raise ConfigError(f"Unknown authentication mechanism: {mechanism}")
        self.username = username
        self.mechanism = mechanism
        self._secret = bytearray(secret.encode("utf-8"))

    @property
    def wiped(self) -> bool:
        return not any(self._secret)

    def secret(self) -> str:
        if self.wiped:
            raise ConfigError("Credentials have already been used")
        return self._secret.decode("utf-8")

    def wipe(self) -> None:
        for i in range(len(self._secret)):
            self._secret[i] = 0

    def __repr__(self):
        return f"Credentials(username={self.username!r}, mechanism={self.mechanism!r}, secret=<redacted>)"


def first_non_empty(*values):
    for value in values:
        if value is not None and str(value).strip() != "":
            return value
    return None


def load_dotenv_values(dotenv_path=None) -> dict:
    """Read a .env file without touching os.environ. Missing files yield an empty dict."""
    path = dotenv_path or os.path.join(os.getcwd(), ".env")
    if not os.path.isfile(path):
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def resolve_setting(arg_value, name, dotenv=None, environ=None):
    """Resolve one setting: argument, then .env, then environment."""
    dotenv = dotenv if dotenv is not None else {}
    environ = environ if environ is not None else os.environ
    return first_non_empty(arg_value, dotenv.get(name), environ.get(name))


def resolve_security(starttls=False, plain=False) -> SecurityMode:
    if starttls and plain:
        raise ConfigError("--starttls and --plain are mutually exclusive")
    if starttls:
        return SecurityMode.STARTTLS
    if plain:
        return SecurityMode.PLAIN
    return SecurityMode.IMPLICIT_TLS


def default_port(security: SecurityMode) -> int:
    return PORT_IMAPS if security is SecurityMode.IMPLICIT_TLS else PORT_IMAP


def build_connection_config(
    host,
    port=None,
    *,
    starttls=False,
    plain=False,
    insecure=False,
    timeout=DEFAULT_TIMEOUT,
    dotenv=None,
    environ=None,
) -> ConnectionConfig:
    """Build the immutable ConnectionConfig for one backup run."""
    security = resolve_security(starttls, plain)
    host = resolve_setting(host, ENV_HOST, dotenv, environ)
    if not host:
        raise ConfigError(f"Must provide a host name (argument or {ENV_HOST})")

    raw_port = resolve_setting(port, ENV_PORT, dotenv, environ)
    try:
        resolved_port = int(raw_port) if raw_port is not None else default_port(security)
    except ValueError:
        raise ConfigError(f"Invalid port number: {raw_port}") from None

    trust = TrustPolicy.ACCEPT_UNTRUSTED if insecure else TrustPolicy.VERIFY
    return ConnectionConfig(host=host, port=resolved_port, security=security, trust=trust, timeout=timeout)


def resolve_credentials(username=None, password=None, *, dotenv=None, environ=None) -> Credentials:
    """
    Resolve the username/password pair for a login attempt.

    Each value is taken from the first non-empty source in priority order:
    argument, .env file, environment variable.
    """
    user = resolve_setting(username, ENV_USERNAME, dotenv, environ)
    secret = resolve_setting(password, ENV_PASSWORD, dotenv, environ)
    return Credentials(user or "", secret or "")
