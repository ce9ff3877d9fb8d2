"""IMAP protocol core: transport, session and retry."""
