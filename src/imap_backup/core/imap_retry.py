"""
IMAP Retry Logic

Transparent retry wrapper for an ImapSession that handles transient server
refusals (e.g. Microsoft 365 "Server Busy") with exponential backoff.
"""

from __future__ import annotations

import time

from imap_backup.errors import BackupError


class SessionProxy:
    """Transparent proxy that retries session commands on transient server errors.

    Wraps an ImapSession. Methods in RETRYABLE_METHODS are retried when they
    raise a BackupError whose server response matches a transient pattern.
    Anything else, including connection loss, propagates immediately.
    """

    # Read-only commands that can be reissued without side effects
    RETRYABLE_METHODS = frozenset(
        {
            "list_mailboxes",
            "select",
            "fetch_identifiers",
            "fetch_message",
        }
    )

    def __init__(self, session, max_retries=3, initial_wait=5, log_fn=print, sleep_fn=time.sleep):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if initial_wait < 0:
            raise ValueError(f"initial_wait must be >= 0, got {initial_wait}")
        self._session = session
        self._max_retries = max_retries
        self._initial_wait = initial_wait
        self._log_fn = log_fn
        self._sleep_fn = sleep_fn

    @property
    def session(self):
        return self._session

    def __getattr__(self, name):
        attr = getattr(self._session, name)
        if name not in self.RETRYABLE_METHODS or not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            for attempt in range(self._max_retries):
                try:
                    return attr(*args, **kwargs)
                except BackupError as e:
                    if not e.is_transient() or attempt + 1 >= self._max_retries:
                        raise
                    wait = self._initial_wait * (2**attempt)  # 5s, 10s, 20s
                    self._log_fn(f"Server busy, retrying in {wait}s... (attempt {attempt + 1}/{self._max_retries})")
                    self._sleep_fn(wait)

        return wrapper
