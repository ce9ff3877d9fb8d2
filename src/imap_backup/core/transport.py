"""
Transport Layer

Owns the raw byte stream to the mail server: plain TCP, implicit TLS, or a
plaintext socket upgraded in place by STARTTLS. Knows nothing about IMAP.

Every read and write is bounded by the configured timeout. A timeout or a
dropped connection raises ConnectionLostError; the socket is released on
every exit path via close() / the context manager.

Optional COMPRESS=DEFLATE (RFC 4978) support layers raw DEFLATE over the
socket once the session has negotiated it.
"""

from __future__ import annotations

import socket
import ssl
import zlib
from collections.abc import Callable

from imap_backup.config import ConnectionConfig, SecurityMode, TrustPolicy
from imap_backup.errors import ConnectError, ConnectionLostError, ProtocolError, TlsError, UntrustedCertificateError

RECV_SIZE = 64 * 1024
MAX_LINE_LENGTH = 1024 * 1024


def build_ssl_context(trust: TrustPolicy) -> ssl.SSLContext:
    """Create the client TLS context for a trust policy. Verification is on unless explicitly disabled."""
    context = ssl.create_default_context()
    if trust is TrustPolicy.ACCEPT_UNTRUSTED:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _handshake(sock, config: ConnectionConfig):
    context = build_ssl_context(config.trust)
    try:
        return context.wrap_socket(sock, server_hostname=config.host)
    except ssl.SSLCertVerificationError as e:
        raise UntrustedCertificateError(f"Untrusted certificate for {config.host}: {e.verify_message}") from e
    except ssl.SSLError as e:
        raise TlsError(f"TLS handshake with {config.host} failed: {e}") from e
    except TimeoutError as e:
        raise TlsError(f"TLS handshake with {config.host} timed out") from e
    except OSError as e:
        raise TlsError(f"TLS handshake with {config.host} failed: {e}") from e


class _DeflateSocket:
    """Socket wrapper that adds raw DEFLATE compression in both directions.

    Outgoing data is flushed with Z_SYNC_FLUSH so each command reaches the
    server immediately. Incoming data already read from the wire before the
    switch is passed as ``initial_compressed``.
    """

    def __init__(self, sock, initial_compressed: bytes = b""):
        self._sock = sock
        self._compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -zlib.MAX_WBITS)
        self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
        self._pending = b""
        if initial_compressed:
            self._pending = self._decompressor.decompress(initial_compressed)

    def sendall(self, data: bytes) -> None:
        payload = self._compressor.compress(data) + self._compressor.flush(zlib.Z_SYNC_FLUSH)
        self._sock.sendall(payload)

    def recv(self, bufsize: int) -> bytes:
        # A partial DEFLATE block can decompress to nothing; keep reading
        # until there is output or the peer closed the connection.
        while not self._pending:
            raw = self._sock.recv(max(bufsize, 16384))
            if not raw:
                return b""
            self._pending = self._decompressor.decompress(raw)

        chunk, self._pending = self._pending[:bufsize], self._pending[bufsize:]
        return chunk

    def settimeout(self, value) -> None:
        self._sock.settimeout(value)

    def shutdown(self, how: int) -> None:
        self._sock.shutdown(how)

    def close(self) -> None:
        self._sock.close()


class Transport:
    """Blocking byte stream with a read buffer, line reads and exact-length reads."""

    def __init__(self, sock, host: str, *, encrypted: bool = False, log_fn: Callable[[str], None] | None = None):
        self._sock = sock
        self._buf = bytearray()
        self._closed = False
        self.host = host
        self.encrypted = encrypted
        self.compressed = False
        self._log_fn = log_fn

    @classmethod
    def connect(cls, config: ConnectionConfig, *, log_fn: Callable[[str], None] | None = None) -> Transport:
        """Open a connection. Implicit TLS is negotiated before the first byte is read."""
        if config.trust is TrustPolicy.ACCEPT_UNTRUSTED and log_fn is not None:
            log_fn(f"Warning: certificate verification is disabled for {config.host}")

        try:
            sock = socket.create_connection((config.host, config.port), timeout=config.timeout)
        except socket.gaierror as e:
            raise ConnectError(f"Could not resolve {config.host}: {e}") from e
        except TimeoutError as e:
            raise ConnectError(f"Connection to {config.host}:{config.port} timed out") from e
        except OSError as e:
            raise ConnectError(f"Could not connect to {config.host}:{config.port}: {e}") from e

        encrypted = False
        if config.security is SecurityMode.IMPLICIT_TLS:
            try:
                sock = _handshake(sock, config)
            except TlsError:
                sock.close()
                raise
            encrypted = True

        return cls(sock, config.host, encrypted=encrypted, log_fn=log_fn)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def closed(self) -> bool:
        return self._closed

    def upgrade(self, config: ConnectionConfig) -> None:
        """Perform the TLS handshake in place over the existing plaintext socket (STARTTLS)."""
        self._ensure_open()
        if self.encrypted:
            raise TlsError("Connection is already encrypted")
        if self._buf:
            # Bytes received before the handshake would be trusted as if they were encrypted.
            raise TlsError("Server sent unexpected data before the TLS handshake")
        try:
            self._sock = _handshake(self._sock, config)
        except TlsError:
            self.close()
            raise
        self.encrypted = True

    def enable_deflate(self) -> None:
        """Switch both directions to raw DEFLATE. Call right after the server accepted COMPRESS."""
        self._ensure_open()
        leftover = bytes(self._buf)
        self._buf.clear()
        self._sock = _DeflateSocket(self._sock, initial_compressed=leftover)
        self.compressed = True

    def _ensure_open(self):
        if self._closed:
            raise ConnectionLostError(f"Connection to {self.host} is closed")

    def _fill(self, bufsize: int = RECV_SIZE) -> None:
        self._ensure_open()
        try:
            data = self._sock.recv(bufsize)
        except TimeoutError as e:
            raise ConnectionLostError(f"Read from {self.host} timed out") from e
        except OSError as e:
            raise ConnectionLostError(f"Read from {self.host} failed: {e}") from e
        if not data:
            raise ConnectionLostError(f"Connection closed by {self.host}")
        self._buf += data

    def readline(self) -> bytes:
        """Read one line including its CRLF terminator."""
        start = 0
        while True:
            idx = self._buf.find(b"\n", start)
            if idx != -1:
                line = bytes(self._buf[: idx + 1])
                del self._buf[: idx + 1]
                return line
            if len(self._buf) > MAX_LINE_LENGTH:
                raise ProtocolError(f"Response line from {self.host} exceeds {MAX_LINE_LENGTH} bytes")
            start = len(self._buf)
            self._fill()

    def read(self, n: int) -> bytes:
        """Read exactly n bytes."""
        while len(self._buf) < n:
            self._fill()
        data = bytes(self._buf[:n])
        del self._buf[:n]
        return data

    def write(self, data: bytes) -> None:
        self._ensure_open()
        try:
            self._sock.sendall(data)
        except TimeoutError as e:
            raise ConnectionLostError(f"Write to {self.host} timed out") from e
        except OSError as e:
            raise ConnectionLostError(f"Write to {self.host} failed: {e}") from e

    def close(self) -> None:
        """Release the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._buf.clear()
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        finally:
            self._sock.close()
