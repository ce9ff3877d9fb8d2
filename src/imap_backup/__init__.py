"""Back up every mailbox of an IMAP account into a single Zstandard-compressed tar archive."""

__version__ = "1.0.0"
