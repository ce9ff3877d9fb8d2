"""
IMAP Response Model

Closed set of response variants for the command/response discipline of
RFC 3501, and the small parsers the session needs: status lines,
parenthesised data (FETCH, LIST), quoting and INTERNALDATE.

Every server line maps to exactly one of TaggedResponse, UntaggedResponse or
ContinuationResponse; anything else is a ProtocolError.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from imap_backup.errors import ProtocolError

STATUS_OK = "OK"
STATUS_NO = "NO"
STATUS_BAD = "BAD"
STATUS_BYE = "BYE"
STATUS_PREAUTH = "PREAUTH"

TAGGED_STATUSES = frozenset({STATUS_OK, STATUS_NO, STATUS_BAD})
UNTAGGED_STATUSES = frozenset({STATUS_OK, STATUS_NO, STATUS_BAD, STATUS_BYE, STATUS_PREAUTH})

# "{123}\r\n" or the non-synchronising "{123+}\r\n" at the end of a line
LITERAL_RE = re.compile(rb"\{(\d+)\+?\}\r?\n$")
TAG_RE = re.compile(r"^[A-Za-z0-9]+$")
STATUS_RE = re.compile(r"^(?P<status>[A-Za-z]+)(?: \[(?P<code>[^\]]*)\])?(?: ?(?P<text>.*))?$")

_MONTHS = {
    "Jan": 1,
    "Feb": 2,
    "Mar": 3,
    "Apr": 4,
    "May": 5,
    "Jun": 6,
    "Jul": 7,
    "Aug": 8,
    "Sep": 9,
    "Oct": 10,
    "Nov": 11,
    "Dec": 12,
}
INTERNALDATE_RE = re.compile(
    r"^\s*(?P<day>\d{1,2})-(?P<mon>[A-Za-z]{3})-(?P<year>\d{4}) "
    r"(?P<hour>\d{2}):(?P<min>\d{2}):(?P<sec>\d{2}) (?P<zsign>[-+])(?P<zh>\d{2})(?P<zm>\d{2})$"
)


@dataclass(frozen=True)
class TaggedResponse:
    """Completion of a command: ``A0001 OK [CODE] text``."""

    tag: str
    status: str
    code: str | None = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    def describe(self) -> str:
        code = f"[{self.code}] " if self.code else ""
        return f"{self.status} {code}{self.text}".strip()


@dataclass(frozen=True)
class UntaggedResponse:
    """Server data: ``* [number] KEYWORD text``. Literal payloads are kept in order in ``literals``."""

    keyword: str
    number: int | None = None
    text: str = ""
    literals: tuple = field(default_factory=tuple)
    code: str | None = None

    def data(self):
        """Parse ``text`` as a sequence of IMAP values, substituting literals."""
        return parse_values(self.text, self.literals)


@dataclass(frozen=True)
class ContinuationResponse:
    """Command continuation request: ``+ text``."""

    text: str = ""


def parse_status(text: str):
    """Split ``OK [CODE] text`` into (status, code, text)."""
    match = STATUS_RE.match(text)
    if not match:
        raise ProtocolError(f"Malformed status response: {text!r}")
    return match.group("status").upper(), match.group("code"), match.group("text") or ""


def parse_response(line: str, literals=()):
    """
    Classify one complete server response (literal payloads already read).

    Returns a TaggedResponse, UntaggedResponse or ContinuationResponse.
    """
    if line.startswith("+"):
        return ContinuationResponse(line[1:].strip())

    if line.startswith("* "):
        rest = line[2:]
        head, _, tail = rest.partition(" ")
        if head.isdigit():
            keyword, _, tail = tail.partition(" ")
            if not keyword:
                raise ProtocolError(f"Malformed untagged response: {line!r}")
            return UntaggedResponse(keyword.upper(), int(head), tail, tuple(literals))
        keyword = head.upper()
        if keyword in UNTAGGED_STATUSES:
            status, code, text = parse_status(rest)
            return UntaggedResponse(status, None, text, tuple(literals), code)
        if not keyword:
            raise ProtocolError(f"Malformed untagged response: {line!r}")
        return UntaggedResponse(keyword, None, tail, tuple(literals))

    tag, _, rest = line.partition(" ")
    if not TAG_RE.match(tag) or not rest:
        raise ProtocolError(f"Unrecognised server response: {line!r}")
    status, code, text = parse_status(rest)
    if status not in TAGGED_STATUSES:
        raise ProtocolError(f"Invalid completion status {status!r} for tag {tag}")
    return TaggedResponse(tag, status, code, text)


def parse_values(text: str, literals=()):
    """
    Parse IMAP data into Python values.

    Parenthesised lists become lists, quoted strings and atoms become str,
    NIL becomes None and ``{N}`` placeholders are replaced by the next
    literal payload (bytes).
    """
    literal_iter = iter(literals)
    pos = 0
    length = len(text)

    def parse_list(closing):
        nonlocal pos
        items = []
        while True:
            while pos < length and text[pos] == " ":
                pos += 1
            if pos >= length:
                if closing:
                    raise ProtocolError(f"Unterminated list in {text!r}")
                return items
            ch = text[pos]
            if ch == ")":
                if not closing:
                    raise ProtocolError(f"Unbalanced ')' in {text!r}")
                pos += 1
                return items
            if ch == "(":
                pos += 1
                items.append(parse_list(True))
            elif ch == '"':
                items.append(parse_quoted())
            elif ch == "{":
                end = text.find("}", pos)
                if end == -1:
                    raise ProtocolError(f"Malformed literal marker in {text!r}")
                pos = end + 1
                try:
                    items.append(next(literal_iter))
                except StopIteration:
                    raise ProtocolError(f"Missing literal payload in {text!r}") from None
            else:
                items.append(parse_atom())

    def parse_quoted():
        nonlocal pos
        pos += 1
        out = []
        while pos < length:
            ch = text[pos]
            if ch == "\\" and pos + 1 < length:
                out.append(text[pos + 1])
                pos += 2
                continue
            if ch == '"':
                pos += 1
                return "".join(out)
            out.append(ch)
            pos += 1
        raise ProtocolError(f"Unterminated quoted string in {text!r}")

    def parse_atom():
        nonlocal pos
        start = pos
        depth = 0
        while pos < length:
            ch = text[pos]
            if ch == "[":
                depth += 1
            elif ch == "]":
                depth -= 1
            elif depth == 0 and ch in " ()":
                break
            pos += 1
        atom = text[start:pos]
        return None if atom.upper() == "NIL" else atom

    return parse_list(False)


def parse_fetch(response: UntaggedResponse) -> dict:
    """Turn ``* 3 FETCH (UID 7 FLAGS (\\Seen))`` into ``{"UID": "7", "FLAGS": ["\\Seen"]}``."""
    values = response.data()
    if len(values) != 1 or not isinstance(values[0], list):
        raise ProtocolError(f"Malformed FETCH data: {response.text!r}")
    items = values[0]
    if len(items) % 2:
        raise ProtocolError(f"Odd number of FETCH items: {response.text!r}")
    return {str(items[i]).upper(): items[i + 1] for i in range(0, len(items), 2)}


def parse_internaldate(value) -> datetime | None:
    """Parse an INTERNALDATE (``17-Jul-1996 02:44:25 -0700``) into an aware datetime."""
    if not value:
        return None
    match = INTERNALDATE_RE.match(value)
    if not match or match.group("mon").title() not in _MONTHS:
        raise ProtocolError(f"Malformed INTERNALDATE: {value!r}")
    offset = timedelta(hours=int(match.group("zh")), minutes=int(match.group("zm")))
    if match.group("zsign") == "-":
        offset = -offset
    return datetime(
        int(match.group("year")),
        _MONTHS[match.group("mon").title()],
        int(match.group("day")),
        int(match.group("hour")),
        int(match.group("min")),
        int(match.group("sec")),
        tzinfo=timezone(offset),
    )


def needs_literal(value: str) -> bool:
    """Strings with CR, LF, NUL or 8-bit characters cannot be sent as quoted strings."""
    return any(ch in "\r\n\x00" or ord(ch) > 0x7F for ch in value)


def quote(value: str) -> str:
    """Quote an astring for a command line."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'

