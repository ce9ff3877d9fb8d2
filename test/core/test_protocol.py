"""
Tests for protocol.py

Tests cover:
- Classification of tagged, untagged and continuation responses
- Status line parsing with response codes
- Parenthesised data parsing (lists, quoted strings, NIL, literals)
- FETCH item extraction
- INTERNALDATE parsing
- Quoting helpers
"""

from datetime import datetime, timedelta, timezone

import pytest

from imap_backup.core import protocol
from imap_backup.core.protocol import ContinuationResponse, TaggedResponse, UntaggedResponse
from imap_backup.errors import ProtocolError


class TestParseResponse:
    def test_tagged_ok_with_code(self):
        response = protocol.parse_response("A0003 OK [READ-ONLY] EXAMINE completed")
        assert response == TaggedResponse("A0003", "OK", "READ-ONLY", "EXAMINE completed")
        assert response.ok
        assert response.describe() == "OK [READ-ONLY] EXAMINE completed"

    def test_tagged_no(self):
        response = protocol.parse_response("A0002 NO [AUTHENTICATIONFAILED] Invalid credentials")
        assert not response.ok
        assert response.code == "AUTHENTICATIONFAILED"

    def test_untagged_numbered(self):
        response = protocol.parse_response("* 23 EXISTS")
        assert isinstance(response, UntaggedResponse)
        assert response.keyword == "EXISTS"
        assert response.number == 23

    def test_untagged_status_with_code(self):
        response = protocol.parse_response("* OK [UIDVALIDITY 3857529045] UIDs valid")
        assert response.keyword == "OK"
        assert response.code == "UIDVALIDITY 3857529045"
        assert response.text == "UIDs valid"

    def test_untagged_data_keyword_is_uppercased(self):
        response = protocol.parse_response('* list (\\Noselect) "/" "Archive"')
        assert response.keyword == "LIST"
        assert response.text == '(\\Noselect) "/" "Archive"'

    def test_continuation(self):
        assert protocol.parse_response("+ Ready for literal data") == ContinuationResponse("Ready for literal data")
        assert protocol.parse_response("+") == ContinuationResponse("")

    def test_literals_are_attached(self):
        response = protocol.parse_response('* LIST () "/" {5}', [b"Draft"])
        assert response.literals == (b"Draft",)

    @pytest.mark.parametrize("line", ["", "garbage", "A0001", "A-1 OK done", "A0001 MAYBE later"])
    def test_unrecognised_lines_raise(self, line):
        with pytest.raises(ProtocolError):
            protocol.parse_response(line)


class TestParseValues:
    def test_nested_lists_quoted_and_nil(self):
        values = protocol.parse_values('(\\HasNoChildren \\Marked) "/" "Sent Items" NIL')
        assert values == [["\\HasNoChildren", "\\Marked"], "/", "Sent Items", None]

    def test_escapes_in_quoted_strings(self):
        assert protocol.parse_values(r'"a \"b\" \\c"') == ['a "b" \\c']

    def test_atoms_keep_brackets(self):
        assert protocol.parse_values("(BODY[HEADER.FIELDS (SUBJECT)] x)") == [["BODY[HEADER.FIELDS (SUBJECT)]", "x"]]

    def test_literal_substitution(self):
        assert protocol.parse_values("(UID 4 BODY[] {3})", [b"abc"]) == [["UID", "4", "BODY[]", b"abc"]]

    def test_missing_literal(self):
        with pytest.raises(ProtocolError):
            protocol.parse_values("({3})")

    def test_unbalanced(self):
        with pytest.raises(ProtocolError):
            protocol.parse_values("(a (b)")
        with pytest.raises(ProtocolError):
            protocol.parse_values("a)")


class TestParseFetch:
    def test_items_by_upper_case_name(self):
        response = protocol.parse_response(
            '* 2 FETCH (uid 7 FLAGS (\\Seen \\Flagged) INTERNALDATE "01-Jan-2024 10:00:00 +0000" RFC822.SIZE 120)'
        )
        items = protocol.parse_fetch(response)
        assert items["UID"] == "7"
        assert items["FLAGS"] == ["\\Seen", "\\Flagged"]
        assert items["RFC822.SIZE"] == "120"

    def test_odd_items(self):
        with pytest.raises(ProtocolError):
            protocol.parse_fetch(protocol.parse_response("* 1 FETCH (UID)"))


class TestParseInternaldate:
    def test_with_negative_offset(self):
        value = protocol.parse_internaldate("17-Jul-1996 02:44:25 -0700")
        assert value == datetime(1996, 7, 17, 2, 44, 25, tzinfo=timezone(-timedelta(hours=7)))
        assert value.timestamp() == 837596665

    def test_space_padded_day(self):
        assert protocol.parse_internaldate(" 1-Feb-2024 00:00:00 +0000").day == 1

    def test_empty(self):
        assert protocol.parse_internaldate(None) is None

    @pytest.mark.parametrize("value", ["yesterday", "01-Foo-2024 10:00:00 +0000", "01-Jan-2024 10:00 +0000"])
    def test_malformed(self, value):
        with pytest.raises(ProtocolError):
            protocol.parse_internaldate(value)


class TestQuoting:
    def test_quote_escapes(self):
        assert protocol.quote('My "Box"\\') == '"My \\"Box\\"\\\\"'

    def test_needs_literal(self):
        assert protocol.needs_literal("Entwürfe")
        assert protocol.needs_literal("a\r\nb")
        assert not protocol.needs_literal("Sent Items")

    def test_literal_marker_regex(self):
        assert protocol.LITERAL_RE.search(b"* 1 FETCH (BODY[] {42}\r\n").group(1) == b"42"
        assert protocol.LITERAL_RE.search(b"A1 LOGIN {3+}\r\n").group(1) == b"3"
        assert protocol.LITERAL_RE.search(b"* OK {no}\r\n") is None
