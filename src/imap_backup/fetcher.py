"""
Message Fetcher

Pull-based iteration over the messages of the selected mailbox. Identifiers
are listed once; each call to next() completes the previous transfer and
starts the next one, so at most one message is in flight and memory does not
grow with mailbox size.

A message that cannot be retrieved is yielded as a FetchFailure instead of
ending the iteration; the caller decides whether to skip it or give up on
the mailbox. The iterator is single-use: retrying needs a fresh select().
"""

from __future__ import annotations

from imap_backup.errors import BackupCancelled, FetchError
from imap_backup.models import FetchFailure, MailboxMeta, MessageRecord, MessageRef


class MessageFetcher:
    """Iterator of MessageRecord | FetchFailure for one selected mailbox."""

    def __init__(self, session, meta: MailboxMeta, cancel_event=None):
        self._session = session
        self._meta = meta
        self._cancel_event = cancel_event
        self._refs: list | None = None
        self._index = 0
        self._done = False

    def __iter__(self):
        return self

    @property
    def total(self) -> int:
        """Number of identifiers listed (available after the first next())."""
        return len(self._refs) if self._refs is not None else self._meta.message_count

    def __next__(self) -> MessageRecord | FetchFailure:
        if self._done:
            raise StopIteration

        # The previous record's stream is invalid from here on.
        self._session.finish_fetch()

        if self._cancel_event is not None and self._cancel_event.is_set():
            self._done = True
            raise BackupCancelled("Backup cancelled by user")

        if self._refs is None:
            self._refs = self._session.fetch_identifiers()

        if self._index >= len(self._refs):
            self._done = True
            raise StopIteration

        ref: MessageRef = self._refs[self._index]
        self._index += 1
        try:
            return self._session.fetch_message(ref, cancel_event=self._cancel_event)
        except FetchError as e:
            return FetchFailure(ref, e)

    def close(self) -> None:
        """Stop iterating and finish any transfer in progress."""
        if not self._done:
            self._done = True
            self._session.finish_fetch()
