"""
IMAP Backup Command Line

Backs up every mailbox of one IMAP account into a single .tar.zst archive.

Usage:
    imap-backup [options] HOST [PORT] OUTPUT

Settings not given on the command line are read from a .env file in the
current directory, then from the environment:
    IMAP_HOST, IMAP_PORT, IMAP_USERNAME, IMAP_PASSWORD,
    IMAP_OAUTH2_CLIENT_ID, IMAP_OAUTH2_CLIENT_SECRET, BACKUP_OUTPUT

Press Ctrl+C once to stop after the current message (the archive is finalised
and marked incomplete); press it again to exit immediately.

Exit status: 0 complete backup, 1 partial or failed backup, 2 usage error.
"""

from __future__ import annotations

import argparse
import getpass
import os
import signal
import sys
import threading

from imap_backup import backup
from imap_backup.auth import oauth2
from imap_backup.config import (
    DEFAULT_TIMEOUT,
    ENV_OAUTH2_CLIENT_ID,
    ENV_OAUTH2_CLIENT_SECRET,
    ENV_OUTPUT,
    ENV_PASSWORD,
    ENV_USERNAME,
    BackupOptions,
    ErrorPolicy,
    TrustPolicy,
    build_connection_config,
    load_dotenv_values,
    resolve_credentials,
    resolve_setting,
)
from imap_backup.errors import ConfigError
from imap_backup.utils.imap_common import format_bytes, format_elapsed, safe_print

EXIT_OK = 0
EXIT_INCOMPLETE = 1
EXIT_USAGE = 2
WARNING_PREFIX = "Warning:"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imap-backup",
        description="Back up all IMAP mailboxes into a single Zstandard-compressed tar archive.",
    )
    parser.add_argument("target", nargs="*", metavar="HOST [PORT] OUTPUT", help="Server, optional port, archive path")
    parser.add_argument("-u", "--username", help=f"Login name (or {ENV_USERNAME})")
    parser.add_argument("-p", "--password", help=f"Password (or {ENV_PASSWORD}; prompted when missing)")

    security = parser.add_mutually_exclusive_group()
    security.add_argument("--starttls", action="store_true", help="Connect in plain text and upgrade with STARTTLS")
    security.add_argument("--plain", action="store_true", help="No encryption at all")
    parser.add_argument(
        "-i", "--insecure", action="store_true", help="Accept untrusted or mismatched server certificates"
    )
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Network timeout in seconds")
    parser.add_argument("--compress", action="store_true", help="Use COMPRESS=DEFLATE when the server offers it")

    parser.add_argument("--oauth2-client-id", help=f"Use XOAUTH2 with this client ID (or {ENV_OAUTH2_CLIENT_ID})")
    parser.add_argument("--oauth2-client-secret", help=f"OAuth2 client secret (or {ENV_OAUTH2_CLIENT_SECRET})")

    choices = [p.value for p in ErrorPolicy]
    parser.add_argument(
        "--on-mailbox-error", choices=choices, default=ErrorPolicy.SKIP.value, help="What to do when a mailbox fails"
    )
    parser.add_argument(
        "--on-message-error", choices=choices, default=ErrorPolicy.SKIP.value, help="What to do when a message fails"
    )

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-d", "--debug", action="store_true", help="Trace the IMAP conversation")
    verbosity.add_argument("-v", "--verbose", action="store_true", help="One line per archived message")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only warnings and errors")
    return parser


def split_target(target, dotenv=None, environ=None):
    """Interpret the positional arguments as (host, port, output)."""
    host = port = output = None
    if len(target) == 3:
        host, port, output = target
    elif len(target) == 2:
        host, output = target
    elif len(target) == 1:
        output = target[0]
    elif len(target) > 3:
        raise ConfigError("Expected HOST [PORT] OUTPUT")

    output = resolve_setting(output, ENV_OUTPUT, dotenv, environ)
    if not output:
        raise ConfigError(f"Must provide an output archive path (argument or {ENV_OUTPUT})")
    return host, port, os.path.expanduser(output)


class ConsoleReporter:
    """Renders BackupEvents on the console."""

    def __init__(self, verbose=False, quiet=False, print_fn=safe_print):
        self.verbose = verbose
        self.quiet = quiet
        self._print = print_fn

    def __call__(self, event: backup.BackupEvent) -> None:
        kind = event.kind
        if kind == backup.EVENT_MAILBOX_SKIPPED:
            self._print(f"Warning: skipped mailbox {event.mailbox}: {event.detail}")
        elif kind == backup.EVENT_MESSAGE_SKIPPED:
            self._print(f"Warning: skipped UID {event.uid} in {event.mailbox}: {event.detail}")
        elif kind == backup.EVENT_ABORTED:
            self._print(f"Error: backup aborted: {event.detail}")
        elif self.quiet:
            return
        elif kind == backup.EVENT_CONNECTED:
            self._print(f"Connected to {event.detail}")
        elif kind == backup.EVENT_AUTHENTICATED:
            self._print(f"Logged in as {event.detail}")
        elif kind == backup.EVENT_MAILBOXES_LISTED:
            self._print(f"Found {event.total} mailboxes")
        elif kind == backup.EVENT_MAILBOX_START:
            self._print(f"--- Mailbox: {event.mailbox} ({event.total} messages) ---")
        elif kind == backup.EVENT_MAILBOX_DONE:
            self._print(f"Archived {event.total} messages from {event.mailbox}")
        elif kind == backup.EVENT_MESSAGE_ARCHIVED and self.verbose:
            self._print(f"  [{event.index}/{event.total}] UID {event.uid} ({format_bytes(event.size)})")
        elif kind == backup.EVENT_FINISHED:
            self._print(f"Archive written to {event.path}")


def warnings_only(print_fn=safe_print):
    """log_fn for --quiet: passes warnings through, drops progress messages."""

    def log(message):
        if message.startswith(WARNING_PREFIX):
            print_fn(message)

    return log


def print_summary(summary: backup.BackupSummary, print_fn=safe_print) -> None:
    print_fn("\n--- Backup Summary ---")
    print_fn(f"Mailboxes : {summary.mailboxes_backed_up}/{summary.mailboxes_total} backed up")
    print_fn(f"Messages  : {summary.messages_archived} archived, {summary.messages_skipped} skipped")
    print_fn(f"Size      : {format_bytes(summary.bytes_archived)}")
    print_fn(f"Elapsed   : {format_elapsed(summary.elapsed)}")
    if summary.archive_path:
        status = "complete" if summary.succeeded else "INCOMPLETE"
        print_fn(f"Archive   : {summary.archive_path} ({status})")
    else:
        print_fn("Archive   : not written")
    for mailbox, reason in summary.skipped_mailboxes:
        print_fn(f"  skipped mailbox {mailbox}: {reason}")
    for mailbox, uid, reason in summary.skipped_messages:
        print_fn(f"  skipped {mailbox} UID {uid}: {reason}")
    for path in summary.truncated_entries:
        print_fn(f"  truncated {path}")
    if summary.error:
        print_fn(f"Error     : {summary.error}")
    print_fn("----------------------")


def make_credential_source(args, host, dotenv, environ=None, interactive=None, log_fn=safe_print):
    """
    Build the callable(attempt) the orchestrator asks for credentials.

    The first attempt uses argument/.env/environment values, prompting for a
    missing password on a terminal. Later attempts prompt again on a terminal
    and give up otherwise. OAuth2 attempts acquire (or refresh) a token each time.
    """
    if interactive is None:
        interactive = sys.stdin.isatty()
    username = resolve_setting(args.username, ENV_USERNAME, dotenv, environ)
    if not username:
        raise ConfigError(f"Must provide a username (-u or {ENV_USERNAME})")

    client_id = resolve_setting(args.oauth2_client_id, ENV_OAUTH2_CLIENT_ID, dotenv, environ)
    if client_id:
        client_secret = resolve_setting(args.oauth2_client_secret, ENV_OAUTH2_CLIENT_SECRET, dotenv, environ)

        def oauth_source(attempt):
            return oauth2.oauth2_credentials(host, client_id, username, client_secret, log_fn=log_fn)

        return oauth_source

    password = resolve_setting(args.password, ENV_PASSWORD, dotenv, environ)
    if not password and not interactive:
        raise ConfigError(f"Must provide a password (-p or {ENV_PASSWORD})")

    def password_source(attempt):
        if attempt == 0 and password:
            return resolve_credentials(username, password, dotenv=dotenv, environ=environ)
        if not interactive:
            return None
        return resolve_credentials(username, getpass.getpass(f"Password for {username}: "), dotenv={}, environ={})

    return password_source


class CancelHandler:
    """SIGINT handler: first press requests a graceful stop, second press interrupts."""

    def __init__(self, event: threading.Event, log_fn=safe_print):
        self.event = event
        self._log_fn = log_fn
        self._previous = None

    def __call__(self, signum, frame):
        if self.event.is_set():
            raise KeyboardInterrupt
        self.event.set()
        self._log_fn("Interrupted: finishing the current message and closing the archive (Ctrl+C again to quit)")

    def __enter__(self):
        self._previous = signal.signal(signal.SIGINT, self)
        return self

    def __exit__(self, exc_type, exc, tb):
        signal.signal(signal.SIGINT, self._previous)
        return False


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    dotenv = load_dotenv_values()

    try:
        host, port, output = split_target(args.target, dotenv)
        config = build_connection_config(
            host,
            port,
            starttls=args.starttls,
            plain=args.plain,
            insecure=args.insecure,
            timeout=args.timeout,
            dotenv=dotenv,
        )
        credential_source = make_credential_source(args, config.host, dotenv)
        options = BackupOptions(
            on_mailbox_error=ErrorPolicy(args.on_mailbox_error),
            on_message_error=ErrorPolicy(args.on_message_error),
            deflate=args.compress,
            debug=args.debug,
        )
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE

    if not args.quiet:
        print("\n--- Configuration Summary ---")
        print(f"Host        : {config.host}:{config.port} ({config.security.value})")
        client_id = resolve_setting(args.oauth2_client_id, ENV_OAUTH2_CLIENT_ID, dotenv)
        print(f"Auth Method : {oauth2.auth_description(config.host, client_id)}")
        if config.trust is TrustPolicy.ACCEPT_UNTRUSTED:
            print("Certificate : NOT verified (--insecure)")
        print(f"Output      : {output}")
        print("-----------------------------\n")

    log_fn = warnings_only() if args.quiet and not args.debug else safe_print
    cancel_event = threading.Event()
    try:
        with CancelHandler(cancel_event):
            summary = backup.run_backup(
                config,
                credential_source,
                output,
                options,
                on_event=ConsoleReporter(verbose=args.verbose, quiet=args.quiet),
                log_fn=log_fn,
                cancel_event=cancel_event,
            )
    except KeyboardInterrupt:
        print("\nBackup interrupted by user.", file=sys.stderr)
        return EXIT_INCOMPLETE

    print_summary(summary)
    return EXIT_OK if summary.succeeded else EXIT_INCOMPLETE


if __name__ == "__main__":
    sys.exit(main())
