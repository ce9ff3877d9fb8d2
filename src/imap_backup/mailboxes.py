"""
Mailbox Enumeration

Turns the raw LIST responses into a MailboxNode tree and flattens it into a
stable traversal order: depth-first, children sorted lexicographically by
path segment. The order depends only on the listing, so repeated backups of
an unchanged account visit mailboxes in the same sequence.

Parents that the server does not list themselves (e.g. "Archive" when only
"Archive/2023" is returned) are synthesised as non-selectable containers so
the hierarchy is reproduced faithfully in the archive.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from imap_backup.core.protocol import UntaggedResponse, parse_values
from imap_backup.errors import ProtocolError
from imap_backup.utils.imap_common import FOLDER_INBOX, decode_modified_utf7, sanitize_filename

NON_SELECTABLE_FLAGS = frozenset({"\\NOSELECT", "\\NONEXISTENT"})
MESSAGE_SUFFIX = ".eml"
# Member name of a message inside its mailbox directory
MESSAGE_NAME_RE = re.compile(r"^\d+" + re.escape(MESSAGE_SUFFIX) + "$")


@dataclass(frozen=True)
class ListEntry:
    """One parsed LIST response."""

    name: str
    delimiter: str | None
    flags: frozenset = field(default_factory=frozenset)

    @property
    def selectable(self) -> bool:
        return not any(f.upper() in NON_SELECTABLE_FLAGS for f in self.flags)


@dataclass(frozen=True)
class MailboxNode:
    """A mailbox in the hierarchy. ``path`` is the server-side name, used verbatim in commands."""

    path: str
    segments: tuple
    delimiter: str | None
    selectable: bool
    children: tuple = ()
    flags: frozenset = field(default_factory=frozenset)

    @property
    def name(self) -> str:
        return self.segments[-1] if self.segments else ""

    @property
    def display_name(self) -> str:
        """Unicode path for messages, with "/" between segments."""
        return "/".join(decode_modified_utf7(s) for s in self.segments)


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="surrogateescape")
    return value


def parse_list_line(response) -> ListEntry:
    """
    Parse a LIST response payload: ``(\\HasNoChildren) "/" "INBOX"``.

    Accepts an UntaggedResponse (literal names included) or the payload text.
    """
    if isinstance(response, UntaggedResponse):
        values = response.data()
    else:
        values = parse_values(response)

    if len(values) != 3 or not isinstance(values[0], list):
        raise ProtocolError(f"Malformed LIST response: {response!r}")

    flags, delimiter, name = values
    if name is None:
        raise ProtocolError(f"LIST response without a mailbox name: {response!r}")
    name = _text(name)
    delimiter = _text(delimiter) if delimiter else None
    return ListEntry(name, delimiter, frozenset(_text(f) for f in flags if f))


def _split(name: str, delimiter: str | None) -> tuple:
    segments = tuple(name.split(delimiter)) if delimiter else (name,)
    # INBOX is case-insensitive; normalise it so "inbox" and "INBOX" merge.
    if segments and segments[0].upper() == FOLDER_INBOX:
        segments = (FOLDER_INBOX,) + segments[1:]
    return segments


def build_tree(entries) -> MailboxNode:
    """Build the mailbox tree; returns a synthetic, non-selectable root with an empty path."""
    found = {}  # segments -> {"path", "delimiter", "selectable", "flags"}

    for entry in entries:
        segments = _split(entry.name, entry.delimiter)
        for depth in range(1, len(segments)):
            prefix = segments[:depth]
            if prefix not in found:
                found[prefix] = {
                    "path": entry.delimiter.join(prefix),
                    "delimiter": entry.delimiter,
                    "selectable": False,
                    "flags": frozenset({"\\Noselect"}),
                }
        path = FOLDER_INBOX if segments == (FOLDER_INBOX,) else entry.name
        existing = found.get(segments)
        if existing is None:
            found[segments] = {
                "path": path,
                "delimiter": entry.delimiter,
                "selectable": entry.selectable,
                "flags": entry.flags,
            }
        else:
            # Duplicate or previously implied: a selectable listing wins.
            if entry.selectable and not existing["selectable"]:
                existing["path"] = path
                existing["selectable"] = True
                existing["flags"] = entry.flags
            elif entry.selectable == existing["selectable"]:
                existing["flags"] = existing["flags"] | entry.flags

    children_of = {}
    for segments in found:
        children_of.setdefault(segments[:-1], []).append(segments)

    def make(segments):
        info = found[segments]
        kids = tuple(make(child) for child in sorted(children_of.get(segments, []), key=lambda s: s[-1]))
        return MailboxNode(info["path"], segments, info["delimiter"], info["selectable"], kids, info["flags"])

    roots = tuple(make(child) for child in sorted(children_of.get((), []), key=lambda s: s[-1]))
    return MailboxNode("", (), None, False, roots)


def enumerate_mailboxes(tree: MailboxNode) -> list:
    """Depth-first pre-order traversal of every mailbox below the root, containers included."""
    ordered = []

    def visit(node):
        for child in node.children:
            ordered.append(child)
            visit(child)

    visit(tree)
    return ordered


def selection_sequence(nodes) -> list:
    """The mailboxes that can be selected, in traversal order."""
    return [node for node in nodes if node.selectable]


def archive_paths(nodes, reserved=()) -> dict:
    """
    Map each node's server path to a unique archive directory.

    Distinct mailboxes whose names sanitise to the same directory get a
    "~2", "~3", ... suffix in traversal order. So do directories that would
    clash with a ``reserved`` member name or with a message member
    (``<uid>.eml``) of the parent mailbox.
    """
    assigned = {}
    dirs = {}  # segments -> archive directory
    used = set(reserved)
    for node in nodes:
        parent_dir = dirs.get(node.segments[:-1])
        leaf = sanitize_filename(decode_modified_utf7(node.name))
        candidate = f"{parent_dir}/{leaf}" if parent_dir else leaf
        if parent_dir and MESSAGE_NAME_RE.match(leaf):
            used.add(candidate)
        unique = candidate
        counter = 2
        while unique in used:
            unique = f"{candidate}~{counter}"
            counter += 1
        used.add(unique)
        dirs[node.segments] = unique
        assigned[node.path] = unique
    return assigned
