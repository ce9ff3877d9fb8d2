"""
Backup Data Model

Values passed between the session, the fetcher and the archive writer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class MailboxMeta:
    """State reported by the server when a mailbox is selected."""

    name: str
    message_count: int
    uid_validity: int | None = None
    read_only: bool = True


@dataclass(frozen=True)
class MessageRef:
    """Identifies one message of the selected mailbox by UID."""

    mailbox: str
    uid: int
    size_hint: int | None = None
    sequence: int | None = None


@dataclass
class MessageRecord:
    """
    A message being transferred.

    ``content`` is a file-like object that yields exactly ``size`` bytes read
    straight from the connection. It is only valid until the next session
    command; the record must be archived before the fetcher advances.
    """

    ref: MessageRef
    content: object
    size: int
    flags: frozenset = field(default_factory=frozenset)
    internal_date: datetime | None = None


@dataclass(frozen=True)
class FetchFailure:
    """A message that could not be retrieved; yielded in place of a MessageRecord."""

    ref: MessageRef
    error: Exception
