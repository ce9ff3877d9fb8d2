"""
IMAP Session

Implements the IMAP4rev1 command/response protocol over a Transport for the
read-only subset a backup needs: greeting and capabilities, STARTTLS, LOGIN or
AUTHENTICATE XOAUTH2, LIST, EXAMINE, FETCH, COMPRESS and LOGOUT.

One command is outstanding at a time. Each command carries a monotonically
increasing tag and all responses are consumed up to the matching tagged
completion before the next command is sent. Message bodies are not buffered:
fetch_message() hands back a stream that reads the body literal directly from
the socket, and finish_fetch() drains the rest of that response.

State: UNAUTHENTICATED -> AUTHENTICATED -> SELECTED -> LOGGED_OUT.
Any protocol error or connection loss moves the session to FAILED, after
which it cannot be used again.
"""

from __future__ import annotations

import base64
import enum
import re
from collections.abc import Callable

from imap_backup.config import MECHANISM_XOAUTH2, ConnectionConfig, Credentials, SecurityMode
from imap_backup.core import protocol
from imap_backup.core.protocol import ContinuationResponse, TaggedResponse, UntaggedResponse
from imap_backup.core.transport import Transport
from imap_backup.errors import (
    AuthError,
    BackupCancelled,
    BackupError,
    ConnectError,
    ConnectionLostError,
    FetchError,
    MailboxError,
    ProtocolError,
    SessionStateError,
    TlsError,
)
from imap_backup.models import MailboxMeta, MessageRecord, MessageRef
from imap_backup.utils.imap_common import safe_print

# Untagged FETCH line whose BODY[] literal is about to follow
BODY_LITERAL_RE = re.compile(rb"BODY\[\]\s*\{(\d+)\+?\}\r?\n$", re.IGNORECASE)
UID_RE = re.compile(r"\bUID\s+(\d+)", re.IGNORECASE)
DRAIN_CHUNK = 64 * 1024


class SessionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    SELECTED = "selected"
    LOGGED_OUT = "logged-out"
    FAILED = "failed"


class _BodyStart:
    """Marker returned by the response reader when a BODY[] literal is next on the wire."""

    def __init__(self, prefix: bytes, size: int):
        self.prefix = prefix
        self.size = size


class LiteralStream:
    """
    Read-only file object over a message literal still on the wire.

    read(n) returns exactly min(n, remaining) bytes. The cancellation event is
    checked before every block, which bounds how long an interrupt waits
    during a large transfer.
    """

    def __init__(self, session: ImapSession, size: int, cancel_event=None):
        self._session = session
        self.size = size
        self.remaining = size
        self._cancel_event = cancel_event

    def readable(self) -> bool:
        return True

    def read(self, n: int = -1) -> bytes:
        if n is None or n < 0 or n > self.remaining:
            n = self.remaining
        if n == 0:
            return b""
        if self._cancel_event is not None and self._cancel_event.is_set():
            self._session._fail()
            raise BackupCancelled("Backup cancelled during message transfer")
        try:
            data = self._session._transport.read(n)
        except BackupError:
            self._session._fail()
            raise
        self.remaining -= len(data)
        return data


class _PendingFetch:
    def __init__(self, tag: str, stream: LiteralStream, ref: MessageRef):
        self.tag = tag
        self.stream = stream
        self.ref = ref


class ImapSession:
    """A single IMAP connection and its protocol state. Not thread-safe; owned by one caller."""

    def __init__(
        self,
        transport: Transport,
        config: ConnectionConfig,
        *,
        log_fn: Callable[[str], None] | None = safe_print,
        debug: bool = False,
        tag_prefix: str = "A",
    ):
        self._transport = transport
        self._config = config
        self._log_fn = log_fn
        self._debug = debug
        self._tag_prefix = tag_prefix
        self._tag_counter = 0
        self._pending: _PendingFetch | None = None
        self._logging_out = False
        self.state = SessionState.UNAUTHENTICATED
        self.capabilities: frozenset = frozenset()
        self.selected: MailboxMeta | None = None

    @classmethod
    def open(cls, config: ConnectionConfig, *, log_fn=safe_print, debug=False) -> ImapSession:
        """Connect, read the greeting and capabilities, and negotiate STARTTLS when configured."""
        transport = Transport.connect(config, log_fn=log_fn)
        session = cls(transport, config, log_fn=log_fn, debug=debug)
        try:
            session._read_greeting()
            if config.security is SecurityMode.STARTTLS:
                session._starttls()
        except BaseException:
            session._fail()
            raise
        return session

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.logout()
        else:
            self.abort()
        return False

    # -- framing ---------------------------------------------------------------

    def _log(self, message: str) -> None:
        if self._log_fn is not None:
            self._log_fn(message)

    def _trace(self, direction: str, line: str) -> None:
        if self._debug:
            self._log(f"{direction} {line.rstrip()}")

    def _next_tag(self) -> str:
        self._tag_counter += 1
        return f"{self._tag_prefix}{self._tag_counter:04d}"

    def _fail(self) -> None:
        """Move to FAILED and release the socket."""
        self.state = SessionState.FAILED
        self._pending = None
        self._transport.close()

    def _protocol_error(self, message: str, response: str | None = None) -> ProtocolError:
        """Fail the session and return the error for the caller to raise."""
        self._fail()
        return ProtocolError(message, response)

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            allowed = ", ".join(s.value for s in states)
            raise SessionStateError(f"Command not allowed in state {self.state.value} (needs {allowed})")
        if self._pending is not None:
            self.finish_fetch()

    def _read_line_parts(self, line: bytes, stream_body: bool = False):
        """Collect a full response starting at ``line``, reading literals by length."""
        parts = []
        literals = []
        while True:
            match = protocol.LITERAL_RE.search(line)
            if not match:
                parts.append(line.rstrip(b"\r\n"))
                break
            if stream_body and not literals and BODY_LITERAL_RE.search(line):
                return _BodyStart(b"".join(parts) + line[: match.start()], int(match.group(1)))
            parts.append(line[: match.end()].rstrip(b"\r\n"))
            literals.append(self._transport.read(int(match.group(1))))
            line = self._transport.readline()
        text = b"".join(parts).decode("utf-8", errors="surrogateescape")
        self._trace("S:", text)
        return protocol.parse_response(text, literals)

    def _read_response(self, stream_body: bool = False):
        return self._read_line_parts(self._transport.readline(), stream_body)

    def _send_line(self, data: bytes, redacted: str | None = None) -> None:
        self._trace("C:", redacted if redacted is not None else data.decode("utf-8", errors="replace"))
        self._transport.write(data)

    def _wait_continuation(self, tag: str, untagged: list):
        """Read until the server asks for more data. A tagged reply here means it refused the command."""
        while True:
            response = self._read_response()
            if isinstance(response, ContinuationResponse):
                return response
            if isinstance(response, UntaggedResponse):
                self._handle_untagged(response, untagged)
                continue
            if response.tag != tag:
                raise ProtocolError(f"Unexpected tag {response.tag} while waiting for {tag}")
            return response

    def _handle_untagged(self, response: UntaggedResponse, untagged: list) -> None:
        if response.keyword == protocol.STATUS_BYE and not self._logging_out:
            raise ConnectionLostError(f"Server closed the session: {response.text}", response.text)
        if response.keyword == "CAPABILITY":
            self.capabilities = frozenset(response.text.upper().split())
        untagged.append(response)

    def _read_until_tagged(self, tag: str, untagged: list) -> TaggedResponse:
        while True:
            response = self._read_response()
            if isinstance(response, UntaggedResponse):
                self._handle_untagged(response, untagged)
                continue
            if isinstance(response, ContinuationResponse):
                raise ProtocolError(f"Unexpected continuation request while waiting for {tag}")
            if response.tag != tag:
                raise ProtocolError(f"Unexpected tag {response.tag} while waiting for {tag}")
            return response

    def _command(self, name: str, *args, redact: bool = False):
        """
        Send one command and read every response up to its completion.

        String arguments are sent verbatim; bytes arguments are sent as
        synchronising literals. Returns (TaggedResponse, [UntaggedResponse]).
        """
        tag = self._next_tag()
        untagged: list = []
        try:
            head = f"{tag} {name}"
            pending = head
            for arg in args:
                if isinstance(arg, bytes):
                    line = f"{pending} {{{len(arg)}}}\r\n".encode()
                    self._send_line(line, f"{head} <redacted>" if redact else None)
                    response = self._wait_continuation(tag, untagged)
                    if isinstance(response, TaggedResponse):
                        return response, untagged
                    self._transport.write(arg)
                    pending = ""
                else:
                    pending = f"{pending} {arg}" if pending else f" {arg}"
            self._send_line(f"{pending}\r\n".encode(), f"{head} <redacted>" if redact else None)
            return self._read_until_tagged(tag, untagged), untagged
        except ProtocolError:
            self._fail()
            raise
        except ConnectionLostError:
            self._fail()
            raise

    def _astring(self, value: str):
        if protocol.needs_literal(value):
            return value.encode("utf-8", errors="surrogateescape")
        return protocol.quote(value)

    # -- connection setup ------------------------------------------------------

    def _read_greeting(self) -> None:
        greeting = self._read_response()
        if not isinstance(greeting, UntaggedResponse):
            raise ProtocolError(f"Unexpected greeting from {self._config.host}")
        if greeting.keyword == protocol.STATUS_BYE:
            raise ConnectError(f"Server refused the connection: {greeting.text}", greeting.text)
        if greeting.keyword not in (protocol.STATUS_OK, protocol.STATUS_PREAUTH):
            raise ProtocolError(f"Unexpected greeting: {greeting.keyword} {greeting.text}")
        if greeting.keyword == protocol.STATUS_PREAUTH:
            if self._config.security is SecurityMode.STARTTLS:
                # A pre-authenticated plaintext session can no longer be upgraded.
                raise TlsError("Server sent PREAUTH before STARTTLS; refusing unencrypted session")
            self.state = SessionState.AUTHENTICATED
        if greeting.code and greeting.code.upper().startswith("CAPABILITY "):
            self.capabilities = frozenset(greeting.code.upper().split()[1:])
        else:
            self.refresh_capabilities()

    def refresh_capabilities(self) -> frozenset:
        response, _ = self._command("CAPABILITY")
        if not response.ok:
            raise self._protocol_error(f"CAPABILITY failed: {response.describe()}", response.text)
        return self.capabilities

    def _starttls(self) -> None:
        if "STARTTLS" not in self.capabilities:
            raise TlsError(f"Server {self._config.host} does not advertise STARTTLS", None)
        response, _ = self._command("STARTTLS")
        if not response.ok:
            raise TlsError(f"STARTTLS rejected: {response.describe()}", response.text)
        self._transport.upgrade(self._config)
        # Capabilities seen before the handshake are untrusted.
        self.capabilities = frozenset()
        self.refresh_capabilities()

    # -- operations ------------------------------------------------------------

    def login(self, credentials: Credentials) -> None:
        """
        Authenticate with LOGIN (password) or AUTHENTICATE XOAUTH2 (OAuth2 token).

        The credential secret is wiped when the attempt completes, whatever the
        outcome. On rejection the connection stays usable for another attempt.
        """
        try:
            self._require(SessionState.UNAUTHENTICATED)
            if credentials.mechanism == MECHANISM_XOAUTH2:
                response = self._authenticate_xoauth2(credentials.username, credentials.secret())
            else:
                if "LOGINDISABLED" in self.capabilities:
                    raise AuthError("Server does not allow LOGIN on this connection (LOGINDISABLED)")
                response, _ = self._command(
                    "LOGIN",
                    self._astring(credentials.username),
                    self._astring(credentials.secret()),
                    redact=True,
                )
        finally:
            credentials.wipe()

        if not response.ok:
            raise AuthError(f"Login failed for {credentials.username}: {response.describe()}", response.text)

        self.state = SessionState.AUTHENTICATED
        if response.code and response.code.upper().startswith("CAPABILITY "):
            self.capabilities = frozenset(response.code.upper().split()[1:])
        else:
            self.refresh_capabilities()

    def _authenticate_xoauth2(self, username: str, token: str) -> TaggedResponse:
        auth_string = f"user={username}\x01auth=Bearer {token}\x01\x01"
        payload = base64.b64encode(auth_string.encode()).decode("ascii")
        tag = self._next_tag()
        untagged: list = []
        try:
            self._send_line(f"{tag} AUTHENTICATE XOAUTH2\r\n".encode())
            response = self._wait_continuation(tag, untagged)
            if isinstance(response, TaggedResponse):
                return response
            self._send_line(f"{payload}\r\n".encode(), "<redacted>")
            response = self._wait_continuation(tag, untagged)
            if isinstance(response, ContinuationResponse):
                # Error details arrive as a challenge; an empty reply ends the exchange.
                self._send_line(b"\r\n")
                response = self._read_until_tagged(tag, untagged)
            return response
        except (ProtocolError, ConnectionLostError):
            self._fail()
            raise

    def enable_compression(self) -> bool:
        """Negotiate COMPRESS=DEFLATE. Returns False when the server does not support it."""
        self._require(SessionState.AUTHENTICATED, SessionState.SELECTED)
        if "COMPRESS=DEFLATE" not in self.capabilities:
            self._log("Deflate compression not supported by server")
            return False
        response, _ = self._command("COMPRESS", "DEFLATE")
        if not response.ok:
            self._log(f"Deflate compression rejected by server: {response.describe()}")
            return False
        self._transport.enable_deflate()
        self._log("Deflate compression enabled")
        return True

    def list_mailboxes(self) -> list:
        """Return the raw LIST responses for every mailbox of the account."""
        self._require(SessionState.AUTHENTICATED, SessionState.SELECTED)
        response, untagged = self._command("LIST", '""', '"*"')
        if not response.ok:
            refusal = MailboxError(f"Cannot list mailboxes: {response.describe()}", response.describe())
            if refusal.is_transient():
                raise refusal
            raise self._protocol_error(f"LIST failed: {response.describe()}", response.text)
        return [u for u in untagged if u.keyword == "LIST"]

    def select(self, mailbox: str) -> MailboxMeta:
        """Open a mailbox read-only (EXAMINE)."""
        self._require(SessionState.AUTHENTICATED, SessionState.SELECTED)
        response, untagged = self._command("EXAMINE", self._astring(mailbox))
        if not response.ok:
            self.state = SessionState.AUTHENTICATED
            self.selected = None
            raise MailboxError(f"Cannot select {mailbox}: {response.describe()}", response.text)

        count = 0
        uid_validity = None
        for u in untagged:
            if u.keyword == "EXISTS" and u.number is not None:
                count = u.number
            elif u.keyword == protocol.STATUS_OK and u.code and u.code.upper().startswith("UIDVALIDITY "):
                try:
                    uid_validity = int(u.code.split()[1])
                except (IndexError, ValueError):
                    raise self._protocol_error(f"Malformed UIDVALIDITY: {u.code}") from None

        read_only = not (response.code or "").upper().startswith("READ-WRITE")
        self.state = SessionState.SELECTED
        self.selected = MailboxMeta(mailbox, count, uid_validity, read_only)
        return self.selected

    def fetch_identifiers(self) -> list:
        """Return a MessageRef for every message of the selected mailbox, ordered by UID."""
        self._require(SessionState.SELECTED)
        meta = self.selected
        if meta.message_count == 0:
            return []

        response, untagged = self._command("FETCH", "1:*", "(UID RFC822.SIZE)")
        if not response.ok:
            raise MailboxError(f"Cannot list messages in {meta.name}: {response.describe()}", response.text)

        refs = {}
        for u in untagged:
            if u.keyword != "FETCH":
                continue
            items = self._parse_fetch(u)
            if "UID" not in items:
                continue
            uid = self._int_item(items, "UID")
            size = self._int_item(items, "RFC822.SIZE") if "RFC822.SIZE" in items else None
            refs[uid] = MessageRef(meta.name, uid, size, u.number)
        return [refs[uid] for uid in sorted(refs)]

    def _parse_fetch(self, response: UntaggedResponse) -> dict:
        try:
            return protocol.parse_fetch(response)
        except ProtocolError:
            self._fail()
            raise

    def _int_item(self, items: dict, key: str) -> int:
        try:
            return int(items[key])
        except (TypeError, ValueError):
            self._fail()
            raise ProtocolError(f"Malformed {key} value: {items[key]!r}") from None

    def fetch_message(self, ref: MessageRef, cancel_event=None) -> MessageRecord:
        """
        Start transferring one message.

        Metadata (flags, internal date) is fetched first so it is known before
        the body. The returned record's content stream must be consumed (or
        abandoned) before the next command; finish_fetch() completes the response.
        """
        self._require(SessionState.SELECTED)

        response, untagged = self._command("UID FETCH", str(ref.uid), "(UID FLAGS INTERNALDATE RFC822.SIZE)")
        if not response.ok:
            raise FetchError(f"Cannot fetch UID {ref.uid} in {ref.mailbox}: {response.describe()}", response.text)

        meta = None
        for u in untagged:
            if u.keyword == "FETCH":
                items = self._parse_fetch(u)
                if "UID" in items and self._int_item(items, "UID") == ref.uid:
                    meta = items
        if meta is None:
            raise FetchError(f"Message UID {ref.uid} no longer exists in {ref.mailbox}")

        flags = frozenset(meta.get("FLAGS") or ())
        try:
            internal_date = protocol.parse_internaldate(meta.get("INTERNALDATE"))
        except ProtocolError:
            self._fail()
            raise

        tag = self._next_tag()
        stray: list = []
        try:
            self._send_line(f"{tag} UID FETCH {ref.uid} BODY.PEEK[]\r\n".encode())
            while True:
                response = self._read_response(stream_body=True)
                if isinstance(response, _BodyStart):
                    self._trace("S:", f"{response.prefix.decode('utf-8', errors='replace')} {{{response.size}}}")
                    uid_match = UID_RE.search(response.prefix.decode("ascii", errors="replace"))
                    if uid_match and int(uid_match.group(1)) != ref.uid:
                        raise ProtocolError(f"Server sent UID {uid_match.group(1)} while fetching {ref.uid}")
                    stream = LiteralStream(self, response.size, cancel_event)
                    self._pending = _PendingFetch(tag, stream, ref)
                    return MessageRecord(ref, stream, response.size, flags, internal_date)
                if isinstance(response, UntaggedResponse):
                    self._handle_untagged(response, stray)
                    continue
                if isinstance(response, ContinuationResponse):
                    raise ProtocolError("Unexpected continuation request during FETCH")
                if response.tag != tag:
                    raise ProtocolError(f"Unexpected tag {response.tag} while waiting for {tag}")
                break
        except (ProtocolError, ConnectionLostError):
            self._fail()
            raise

        if not response.ok:
            raise FetchError(f"Cannot fetch UID {ref.uid} in {ref.mailbox}: {response.describe()}", response.text)
        raise FetchError(f"Server returned no body for UID {ref.uid} in {ref.mailbox}")

    def finish_fetch(self) -> None:
        """Discard any unread body bytes and read the rest of the FETCH response."""
        pending = self._pending
        if pending is None:
            return
        self._pending = None
        try:
            while pending.stream.remaining:
                chunk = min(DRAIN_CHUNK, pending.stream.remaining)
                self._transport.read(chunk)
                pending.stream.remaining -= chunk
            self._skip_response_tail(self._transport.readline())
            response = self._read_until_tagged(pending.tag, [])
        except (ProtocolError, ConnectionLostError):
            self._fail()
            raise
        if not response.ok:
            self._log(f"Warning: FETCH of UID {pending.ref.uid} completed with {response.describe()}")

    def _skip_response_tail(self, line: bytes) -> None:
        """Consume what follows a body literal, e.g. " UID 7 FLAGS (\\Seen))", including any further literals."""
        while True:
            self._trace("S:", line.decode("utf-8", errors="replace"))
            match = protocol.LITERAL_RE.search(line)
            if not match:
                return
            self._transport.read(int(match.group(1)))
            line = self._transport.readline()

    def logout(self) -> None:
        """Send LOGOUT and close the connection. Safe to call more than once."""
        if self.state in (SessionState.LOGGED_OUT, SessionState.FAILED):
            self._transport.close()
            return
        self._logging_out = True
        try:
            self.finish_fetch()
            self._command("LOGOUT")
        except BackupError as e:
            self._log(f"Warning: logout did not complete cleanly: {e}")
        finally:
            self._transport.close()
            self.state = SessionState.LOGGED_OUT
            self.selected = None

    def abort(self) -> None:
        """Drop the connection without LOGOUT (used when the protocol stream is unusable)."""
        if self.state is not SessionState.LOGGED_OUT:
            self._fail()
