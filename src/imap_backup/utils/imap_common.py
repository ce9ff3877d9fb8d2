"""
IMAP Common Utilities

Shared helpers for the backup engine: thread-safe console output, mailbox name
decoding and filesystem-safe naming, and human-readable formatting.
"""

from __future__ import annotations

import base64
import re
import threading

# IMAP Folder Constants
FOLDER_INBOX = "INBOX"

_print_lock = threading.Lock()


def safe_print(message: str) -> None:
    """Thread-safe print with short thread names for logs."""
    t_name = threading.current_thread().name
    short_name = t_name.replace("ThreadPoolExecutor-", "T-").replace("MainThread", "MAIN")
    with _print_lock:
        print(f"[{short_name}] {message}")


def sanitize_filename(filename):
    """
    Sanitizes a string to be safe for use as a filename.
    Removes/replaces characters that are illegal in file systems.
    Truncates to 250 chars.
    """
    if not filename:
        return "untitled"
    # Invalid: < > : " / \ | ? * and control chars
    s = re.sub(r'[<>:"/\\|?*\x00-\x1f]', "_", filename)
    s = s.strip().strip(".")
    return s[:250] if s else "untitled"


def decode_modified_utf7(name: str) -> str:
    """
    Decodes an IMAP mailbox name from modified UTF-7 (RFC 3501 section 5.1.3).

    "&-" is a literal ampersand; "&...-" wraps modified base64 of UTF-16BE.
    Malformed sequences are left untouched.
    """
    if "&" not in name:
        return name

    out = []
    i = 0
    while i < len(name):
        ch = name[i]
        if ch != "&":
            out.append(ch)
            i += 1
            continue
        end = name.find("-", i + 1)
        if end == -1:
            out.append(name[i:])
            break
        chunk = name[i + 1 : end]
        if not chunk:
            out.append("&")
        else:
            b64 = chunk.replace(",", "/")
            b64 += "=" * (-len(b64) % 4)
            try:
                out.append(base64.b64decode(b64).decode("utf-16-be"))
            except (ValueError, UnicodeDecodeError):
                out.append(name[i : end + 1])
        i = end + 1
    return "".join(out)


def format_bytes(size: int) -> str:
    """Format a byte count with binary units (e.g. "1.50 MiB")."""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            if unit == "B":
                return f"{int(value)} B"
            return f"{value:.2f} {unit}"
        value /= 1024
    return f"{size} B"


def format_elapsed(seconds: float) -> str:
    """Format a duration as HH:MM:SS."""
    total = int(seconds)
    hours = total // 3600
    minutes = total // 60 % 60
    secs = total % 60
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
