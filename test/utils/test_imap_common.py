"""
Tests for imap_common.py

Tests cover:
- Thread-safe printing
- Filename sanitization
- Modified UTF-7 mailbox name decoding
- Byte and elapsed-time formatting
"""

import threading

import pytest

from imap_backup.utils import imap_common


class TestSafePrint:
    def test_prefixes_thread_name(self, capsys):
        imap_common.safe_print("hello")
        assert capsys.readouterr().out == "[MAIN] hello\n"

    def test_worker_thread_name(self, capsys):
        t = threading.Thread(target=imap_common.safe_print, args=("from worker",), name="archive-compressor")
        t.start()
        t.join()
        assert capsys.readouterr().out == "[archive-compressor] from worker\n"


class TestSanitizeFilename:
    """Tests for sanitize_filename function."""

    def test_valid_filename(self):
        assert imap_common.sanitize_filename("Sent Items") == "Sent Items"

    def test_invalid_characters(self):
        assert imap_common.sanitize_filename('a<b>c:d"e/f\\g|h?i*j') == "a_b_c_d_e_f_g_h_i_j"

    def test_empty_input(self):
        assert imap_common.sanitize_filename("") == "untitled"
        assert imap_common.sanitize_filename(None) == "untitled"

    def test_dots_only(self):
        assert imap_common.sanitize_filename("..") == "untitled"

    def test_long_filename_truncation(self):
        assert len(imap_common.sanitize_filename("x" * 300)) == 250


class TestDecodeModifiedUtf7:
    @pytest.mark.parametrize(
        "encoded, decoded",
        [
            ("INBOX", "INBOX"),
            ("Entw&APw-rfe", "Entwürfe"),
            ("&ZeVnLIqe-", "日本語"),
            ("Tom &- Jerry", "Tom & Jerry"),
            ("&AMk-l&AOk-ments envoy&AOk-s", "Éléments envoyés"),
        ],
    )
    def test_decode(self, encoded, decoded):
        assert imap_common.decode_modified_utf7(encoded) == decoded

    def test_malformed_left_untouched(self):
        assert imap_common.decode_modified_utf7("Broken&") == "Broken&"
        assert imap_common.decode_modified_utf7("Odd &AP-") == "Odd &AP-"


class TestFormatting:
    @pytest.mark.parametrize(
        "size, text",
        [(0, "0 B"), (1023, "1023 B"), (1024, "1.00 KiB"), (1536 * 1024, "1.50 MiB"), (5 * 1024**3, "5.00 GiB")],
    )
    def test_format_bytes(self, size, text):
        assert imap_common.format_bytes(size) == text

    @pytest.mark.parametrize("seconds, text", [(0, "00:00:00"), (61.9, "00:01:01"), (3600 * 27 + 5, "27:00:05")])
    def test_format_elapsed(self, seconds, text):
        assert imap_common.format_elapsed(seconds) == text
