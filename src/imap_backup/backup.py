"""
Backup Orchestrator

Drives one backup run: connect, log in, enumerate mailboxes, then for each
mailbox select it, pull its messages one at a time and stream them into the
archive, and finally log out and finalise the archive.

Failure policy:
- Mailbox that cannot be selected: counted and skipped (or abort the run when
  on_mailbox_error is ABORT).
- Message that cannot be fetched: counted and skipped (or give up on the
  mailbox when on_message_error is ABORT).
- Connection-level errors (connect, TLS, authentication after the retry
  budget, dropped connection, protocol violation) and cancellation end the
  run. The archive is still finalised with what was written and marked
  incomplete.
- Archive write errors end the run. The archive is finalised when the tar
  stream is intact; otherwise (e.g. disk full) the partial file is removed.
- KeyboardInterrupt drops the connection, finalises the archive with the
  incomplete marker when the tar stream allows it, and propagates.

Every step is reported through an ``on_event`` callback.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from imap_backup.archive import ArchiveWriter
from imap_backup.config import BackupOptions, ConnectionConfig, Credentials, ErrorPolicy
from imap_backup.core.imap_retry import SessionProxy
from imap_backup.core.imap_session import ImapSession
from imap_backup.errors import AuthError, BackupCancelled, BackupError, MailboxError, WriteError
from imap_backup.fetcher import MessageFetcher
from imap_backup.mailboxes import (
    MESSAGE_SUFFIX,
    archive_paths,
    build_tree,
    enumerate_mailboxes,
    parse_list_line,
    selection_sequence,
)
from imap_backup.models import FetchFailure
from imap_backup.utils.imap_common import safe_print

INCOMPLETE_MARKER = "BACKUP-INCOMPLETE.json"

EVENT_CONNECTED = "connected"
EVENT_AUTHENTICATED = "authenticated"
EVENT_MAILBOXES_LISTED = "mailboxes-listed"
EVENT_MAILBOX_START = "mailbox-start"
EVENT_MAILBOX_DONE = "mailbox-done"
EVENT_MAILBOX_SKIPPED = "mailbox-skipped"
EVENT_CONTAINER = "container"
EVENT_MESSAGE_ARCHIVED = "message-archived"
EVENT_MESSAGE_SKIPPED = "message-skipped"
EVENT_FINISHED = "finished"
EVENT_ABORTED = "aborted"


@dataclass(frozen=True)
class BackupEvent:
    kind: str
    mailbox: str | None = None
    uid: int | None = None
    size: int | None = None
    index: int | None = None
    total: int | None = None
    path: str | None = None
    detail: str | None = None


@dataclass
class BackupSummary:
    """Counters and diagnostics for one run."""

    mailboxes_total: int = 0
    mailboxes_backed_up: int = 0
    containers: int = 0
    messages_archived: int = 0
    bytes_archived: int = 0
    skipped_mailboxes: list = field(default_factory=list)  # (mailbox, reason)
    skipped_messages: list = field(default_factory=list)  # (mailbox, uid, reason)
    truncated_entries: list = field(default_factory=list)  # archive paths
    aborted: bool = False
    cancelled: bool = False
    error: str | None = None
    archive_path: str | None = None
    elapsed: float = 0.0

    @property
    def mailboxes_skipped(self) -> int:
        return len(self.skipped_mailboxes)

    @property
    def messages_skipped(self) -> int:
        return len(self.skipped_messages)

    @property
    def incomplete(self) -> bool:
        return bool(
            self.aborted or self.cancelled or self.skipped_mailboxes or self.skipped_messages or self.truncated_entries
        )

    @property
    def succeeded(self) -> bool:
        return self.archive_path is not None and not self.incomplete

    def to_dict(self) -> dict:
        return {
            "complete": not self.incomplete,
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "error": self.error,
            "mailboxes_total": self.mailboxes_total,
            "mailboxes_backed_up": self.mailboxes_backed_up,
            "mailboxes_skipped": [{"mailbox": m, "reason": r} for m, r in self.skipped_mailboxes],
            "messages_archived": self.messages_archived,
            "messages_skipped": [{"mailbox": m, "uid": u, "reason": r} for m, u, r in self.skipped_messages],
            "truncated_entries": list(self.truncated_entries),
            "bytes_archived": self.bytes_archived,
        }


def single_use(credentials: Credentials) -> Callable[[int], Credentials | None]:
    """Credential source for a fixed pair: only the first attempt gets credentials."""

    def source(attempt):
        return credentials if attempt == 0 else None

    return source


class BackupOrchestrator:
    def __init__(
        self,
        config: ConnectionConfig,
        credential_source,
        output_path,
        options: BackupOptions | None = None,
        *,
        on_event: Callable[[BackupEvent], None] | None = None,
        log_fn: Callable[[str], None] | None = safe_print,
        cancel_event=None,
        session_factory=ImapSession.open,
        retry_wait: float = 5,
    ):
        if isinstance(credential_source, Credentials):
            credential_source = single_use(credential_source)
        self._config = config
        self._credential_source = credential_source
        self._output_path = output_path
        self._options = options or BackupOptions()
        self._on_event = on_event
        self._log_fn = log_fn
        self._cancel_event = cancel_event
        self._session_factory = session_factory
        self._retry_wait = retry_wait

    def _log(self, message: str) -> None:
        if self._log_fn is not None:
            self._log_fn(message)

    def _emit(self, kind: str, **kwargs) -> None:
        if self._on_event is not None:
            self._on_event(BackupEvent(kind, **kwargs))

    def _check_cancel(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise BackupCancelled("Backup cancelled by user")

    def run(self) -> BackupSummary:
        summary = BackupSummary()
        started = time.monotonic()
        session = None
        try:
            self._check_cancel()
            session = self._session_factory(self._config, log_fn=self._log_fn, debug=self._options.debug)
            self._emit(EVENT_CONNECTED, detail=f"{self._config.host}:{self._config.port}")
            self._login(session)
            if self._options.deflate:
                session.enable_compression()

            proxy = SessionProxy(session, initial_wait=self._retry_wait, log_fn=self._log)
            entries = [parse_list_line(line) for line in proxy.list_mailboxes()]
            nodes = enumerate_mailboxes(build_tree(entries))
            summary.mailboxes_total = len(selection_sequence(nodes))
            self._emit(EVENT_MAILBOXES_LISTED, total=summary.mailboxes_total)

            self._write_archive(proxy, nodes, summary)
        except BackupError as e:
            self._record_failure(summary, e)
        except KeyboardInterrupt:
            # Hard stop: drop the connection instead of draining the transfer
            if session is not None:
                session.abort()
            raise
        finally:
            if session is not None:
                session.logout()
            summary.elapsed = time.monotonic() - started

        if summary.aborted or summary.cancelled:
            self._emit(EVENT_ABORTED, detail=summary.error)
        else:
            self._emit(EVENT_FINISHED, path=summary.archive_path)
        return summary

    def _record_failure(self, summary: BackupSummary, error: BackupError) -> None:
        if isinstance(error, BackupCancelled):
            summary.cancelled = True
        else:
            summary.aborted = True
        if summary.error is None:
            summary.error = f"{type(error).__name__}: {error}"

    def _login(self, session) -> None:
        attempts = 1 + self._options.login_retries
        last_error = None
        for attempt in range(attempts):
            credentials = self._credential_source(attempt)
            if credentials is None:
                break
            try:
                session.login(credentials)
            except AuthError as e:
                last_error = e
                self._log(f"Warning: authentication failed (attempt {attempt + 1}/{attempts}): {e}")
                continue
            finally:
                credentials.wipe()
            self._emit(EVENT_AUTHENTICATED, detail=credentials.username)
            return
        raise last_error or AuthError("No credentials available")

    def _write_archive(self, session, nodes, summary: BackupSummary) -> None:
        options = self._options
        writer = ArchiveWriter.open(
            self._output_path,
            block_size=options.block_size,
            queue_depth=options.queue_depth,
            level=options.compression_level,
        )
        try:
            self._backup_nodes(session, nodes, writer, summary)
        except BackupError as e:
            self._record_failure(summary, e)
        except KeyboardInterrupt:
            summary.cancelled = True
            summary.error = summary.error or "KeyboardInterrupt: backup interrupted by user"
            raise
        finally:
            self._finalise(writer, summary)

    def _finalise(self, writer: ArchiveWriter, summary: BackupSummary) -> None:
        """Append the incomplete marker when needed, then close (or discard) the archive."""
        try:
            if summary.incomplete and not writer.broken:
                payload = json.dumps(summary.to_dict(), indent=2).encode("utf-8")
                writer.append_bytes(INCOMPLETE_MARKER, payload)
        except WriteError as e:
            self._record_failure(summary, e)
        finally:
            try:
                writer.close()
                summary.archive_path = writer.path
            except WriteError as e:
                self._record_failure(summary, e)

    def _backup_nodes(self, session, nodes, writer: ArchiveWriter, summary: BackupSummary) -> None:
        directories = archive_paths(nodes, reserved=(INCOMPLETE_MARKER,))
        for node in nodes:
            self._check_cancel()
            directory = directories[node.path]
            if not node.selectable:
                writer.add_directory(directory)
                summary.containers += 1
                self._emit(EVENT_CONTAINER, mailbox=node.display_name, path=directory + "/")
                continue
            self._backup_mailbox(session, node, directory, writer, summary)

    def _skip_mailbox(self, summary: BackupSummary, name: str, error: BackupError) -> None:
        summary.skipped_mailboxes.append((name, str(error)))
        self._emit(EVENT_MAILBOX_SKIPPED, mailbox=name, detail=str(error))
        if self._options.on_mailbox_error is ErrorPolicy.ABORT:
            raise error

    def _backup_mailbox(self, session, node, directory: str, writer: ArchiveWriter, summary: BackupSummary) -> None:
        name = node.display_name
        try:
            meta = session.select(node.path)
        except MailboxError as e:
            self._skip_mailbox(summary, name, e)
            return

        self._emit(EVENT_MAILBOX_START, mailbox=name, total=meta.message_count)
        fetcher = MessageFetcher(session, meta, self._cancel_event)
        archived = 0
        index = 0
        try:
            for item in fetcher:
                index += 1
                if isinstance(item, FetchFailure):
                    summary.skipped_messages.append((name, item.ref.uid, str(item.error)))
                    self._emit(EVENT_MESSAGE_SKIPPED, mailbox=name, uid=item.ref.uid, detail=str(item.error))
                    if self._options.on_message_error is ErrorPolicy.ABORT:
                        fetcher.close()
                        raise MailboxError(f"Gave up on {name} after UID {item.ref.uid} failed: {item.error}")
                    continue

                path = f"{directory}/{item.ref.uid}{MESSAGE_SUFFIX}"
                mtime = item.internal_date.timestamp() if item.internal_date else None
                try:
                    writer.append_entry(path, item.size, item.content, mtime=mtime, flags=item.flags, uid=item.ref.uid)
                except BaseException:
                    last = writer.entries[-1] if writer.entries else None
                    if last is not None and last.path == path and last.truncated:
                        summary.truncated_entries.append(path)
                    raise

                archived += 1
                summary.messages_archived += 1
                summary.bytes_archived += item.size
                self._emit(
                    EVENT_MESSAGE_ARCHIVED,
                    mailbox=name,
                    uid=item.ref.uid,
                    size=item.size,
                    index=index,
                    total=fetcher.total,
                    path=path,
                )
        except MailboxError as e:
            self._skip_mailbox(summary, name, e)
            if archived == 0:
                writer.add_directory(directory)
            return

        if archived == 0:
            writer.add_directory(directory)
        summary.mailboxes_backed_up += 1
        self._emit(EVENT_MAILBOX_DONE, mailbox=name, total=archived)


def run_backup(
    config: ConnectionConfig,
    credentials,
    output_path,
    options: BackupOptions | None = None,
    **kwargs,
) -> BackupSummary:
    """Run one backup. ``credentials`` is a Credentials object or a callable(attempt) -> Credentials | None."""
    return BackupOrchestrator(config, credentials, output_path, options, **kwargs).run()
