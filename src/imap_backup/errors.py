"""
Backup Error Taxonomy

Every failure raised by the backup engine derives from BackupError.
Connection-level errors abort a run; MailboxError and FetchError are
recoverable and only counted in the final summary.
"""

from __future__ import annotations

# Server responses that indicate a temporary refusal (e.g. Microsoft 365 "Server Busy")
TRANSIENT_PATTERNS = ("UNAVAILABLE", "Server Busy", "try again", "THROTTLED")


class BackupError(Exception):
    """Base class for all backup engine errors.

    Args:
        message: Human-readable description
        response: Optional server response text that triggered the error
    """

    def __init__(self, message, response=None):
        super().__init__(message)
        self.response = response

    def is_transient(self):
        """Check if the server response attached to this error is a temporary refusal."""
        if not self.response:
            return False
        return any(pattern.lower() in self.response.lower() for pattern in TRANSIENT_PATTERNS)


class ConfigError(BackupError):
    """Invalid or incomplete configuration."""


class ConnectError(BackupError):
    """DNS or socket failure while establishing the connection."""


class ConnectionLostError(BackupError):
    """The connection dropped or timed out after it was established."""


class TlsError(BackupError):
    """TLS handshake failure."""


class UntrustedCertificateError(TlsError):
    """The server certificate chain or hostname failed verification."""


class AuthError(BackupError):
    """The server rejected the credentials."""


class ProtocolError(BackupError):
    """The server sent something the session cannot interpret."""


class SessionStateError(BackupError):
    """A command was issued in a session state that does not allow it."""


class MailboxError(BackupError):
    """A mailbox could not be selected. The run continues with the next mailbox."""


class FetchError(BackupError):
    """A single message could not be retrieved (e.g. expunged mid-run)."""


class WriteError(BackupError):
    """The archive could not be written (disk full, permissions, ...)."""


class BackupCancelled(BackupError):
    """The run was interrupted by the user."""
