"""
Tests for cli.py

Tests cover:
- Positional HOST [PORT] OUTPUT handling and BACKUP_OUTPUT fallback
- Argument parsing (mutually exclusive modes, error policies)
- Credential sources: password, non-interactive retry, OAuth2
- Console reporting in quiet / verbose modes, warnings kept by -q
- SIGINT handling
- main() exit codes against the mock server
"""

import io
import signal
import threading

import pytest

from conftest import make_message
from imap_backup import backup, cli
from imap_backup.auth import oauth2
from imap_backup.config import MECHANISM_XOAUTH2, Credentials
from imap_backup.errors import ConfigError

ENV_NAMES = (
    "IMAP_HOST",
    "IMAP_PORT",
    "IMAP_USERNAME",
    "IMAP_PASSWORD",
    "IMAP_OAUTH2_CLIENT_ID",
    "IMAP_OAUTH2_CLIENT_SECRET",
    "BACKUP_OUTPUT",
)


@pytest.fixture
def clean_env(tmp_path, monkeypatch):
    """No .env file and no IMAP_* variables."""
    monkeypatch.chdir(tmp_path)
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return tmp_path


class TestSplitTarget:
    def test_host_port_output(self):
        assert cli.split_target(["imap.example.com", "993", "out.tar.zst"], {}, {}) == (
            "imap.example.com",
            "993",
            "out.tar.zst",
        )

    def test_host_output(self):
        assert cli.split_target(["imap.example.com", "out.tar.zst"], {}, {}) == ("imap.example.com", None, "out.tar.zst")

    def test_output_only(self):
        assert cli.split_target(["out.tar.zst"], {}, {}) == (None, None, "out.tar.zst")

    def test_output_from_environment(self):
        assert cli.split_target([], {}, {"BACKUP_OUTPUT": "env.tar.zst"})[2] == "env.tar.zst"

    def test_home_expanded(self, monkeypatch):
        monkeypatch.setenv("HOME", "/home/someone")
        assert cli.split_target(["~/mail.tar.zst"], {}, {})[2] == "/home/someone/mail.tar.zst"

    def test_missing_output(self):
        with pytest.raises(ConfigError, match="output"):
            cli.split_target([], {}, {})

    def test_too_many(self):
        with pytest.raises(ConfigError):
            cli.split_target(["a", "1", "b", "c"], {}, {})


class TestParser:
    def test_defaults(self):
        args = cli.build_parser().parse_args(["out.tar.zst"])
        assert args.on_mailbox_error == "skip"
        assert args.on_message_error == "skip"
        assert not args.starttls and not args.plain and not args.insecure

    def test_security_modes_exclusive(self, capsys):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--starttls", "--plain", "out"])

    def test_verbosity_exclusive(self, capsys):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["-q", "-v", "out"])

    def test_invalid_policy(self, capsys):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["--on-message-error", "retry", "out"])


class TestCredentialSource:
    def parse(self, *argv):
        return cli.build_parser().parse_args(list(argv) + ["out"])

    def test_password_once_when_not_interactive(self):
        source = cli.make_credential_source(self.parse("-u", "me", "-p", "pw"), "h", {}, {}, interactive=False)
        creds = source(0)
        assert (creds.username, creds.secret()) == ("me", "pw")
        assert source(1) is None

    def test_values_from_dotenv(self):
        dotenv = {"IMAP_USERNAME": "me", "IMAP_PASSWORD": "pw"}
        source = cli.make_credential_source(self.parse(), "h", dotenv, {}, interactive=False)
        assert source(0).secret() == "pw"

    def test_prompt_on_retry(self, monkeypatch):
        monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: "typed")
        source = cli.make_credential_source(self.parse("-u", "me", "-p", "pw"), "h", {}, {}, interactive=True)
        assert source(1).secret() == "typed"

    def test_prompt_for_missing_password(self, monkeypatch):
        monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: "typed")
        source = cli.make_credential_source(self.parse("-u", "me"), "h", {}, {}, interactive=True)
        assert source(0).secret() == "typed"

    def test_missing_password(self):
        with pytest.raises(ConfigError, match="password"):
            cli.make_credential_source(self.parse("-u", "me"), "h", {}, {}, interactive=False)

    def test_missing_username(self):
        with pytest.raises(ConfigError, match="username"):
            cli.make_credential_source(self.parse("-p", "pw"), "h", {}, {}, interactive=False)

    def test_oauth2_source(self, monkeypatch):
        calls = []

        def fake(host, client_id, email, client_secret=None, log_fn=None):
            calls.append((host, client_id, email, client_secret))
            return Credentials(email, "token", mechanism=MECHANISM_XOAUTH2)

        monkeypatch.setattr(oauth2, "oauth2_credentials", fake)
        args = self.parse("-u", "me@gmail.com", "--oauth2-client-id", "cid", "--oauth2-client-secret", "sec")
        source = cli.make_credential_source(args, "imap.gmail.com", {}, {}, interactive=False)
        assert source(0).mechanism == MECHANISM_XOAUTH2
        source(1)
        assert calls == [("imap.gmail.com", "cid", "me@gmail.com", "sec")] * 2


class TestConsoleReporter:
    def events(self):
        return [
            backup.BackupEvent(backup.EVENT_CONNECTED, detail="h:993"),
            backup.BackupEvent(backup.EVENT_MESSAGE_ARCHIVED, mailbox="INBOX", uid=1, size=2048, index=1, total=1),
            backup.BackupEvent(backup.EVENT_MESSAGE_SKIPPED, mailbox="INBOX", uid=2, detail="gone"),
            backup.BackupEvent(backup.EVENT_FINISHED, path="out.tar.zst"),
        ]

    def test_quiet_shows_only_warnings(self):
        lines = []
        reporter = cli.ConsoleReporter(quiet=True, print_fn=lines.append)
        for event in self.events():
            reporter(event)
        assert lines == ["Warning: skipped UID 2 in INBOX: gone"]

    def test_verbose_lists_messages(self):
        lines = []
        reporter = cli.ConsoleReporter(verbose=True, print_fn=lines.append)
        for event in self.events():
            reporter(event)
        assert "  [1/1] UID 1 (2.00 KiB)" in lines
        assert lines[0] == "Connected to h:993"
        assert lines[-1] == "Archive written to out.tar.zst"

    def test_default_omits_messages(self):
        lines = []
        reporter = cli.ConsoleReporter(print_fn=lines.append)
        for event in self.events():
            reporter(event)
        assert not any("UID 1" in line for line in lines)


class TestWarningsOnly:
    def test_passes_only_warnings(self):
        lines = []
        log = cli.warnings_only(lines.append)
        log("Deflate compression enabled")
        log("Warning: certificate verification is disabled for h")
        log("Server busy, retrying in 5s... (attempt 1/3)")
        assert lines == ["Warning: certificate verification is disabled for h"]


class TestCancelHandler:
    def test_first_press_sets_event_second_interrupts(self):
        event = threading.Event()
        messages = []
        before = signal.getsignal(signal.SIGINT)
        with cli.CancelHandler(event, log_fn=messages.append) as handler:
            assert signal.getsignal(signal.SIGINT) is handler
            handler(signal.SIGINT, None)
            assert event.is_set()
            assert len(messages) == 1
            with pytest.raises(KeyboardInterrupt):
                handler(signal.SIGINT, None)
        assert signal.getsignal(signal.SIGINT) is before


class TestMain:
    def test_complete_backup(self, clean_env, single_mock_server, capsys):
        _, port = single_mock_server({"INBOX": [make_message("hi")]})
        output = clean_env / "mail.tar.zst"
        code = cli.main(["localhost", str(port), str(output), "--plain", "-u", "user", "-p", "pass"])
        assert code == cli.EXIT_OK
        assert output.exists()
        out = capsys.readouterr().out
        assert "Configuration Summary" in out
        assert "Auth Method : Basic (password)" in out
        assert "(complete)" in out

    def test_settings_from_dotenv(self, clean_env, single_mock_server, capsys):
        _, port = single_mock_server({"INBOX": [make_message("hi")]})
        (clean_env / ".env").write_text(
            f"IMAP_HOST=localhost\nIMAP_PORT={port}\nIMAP_USERNAME=user\nIMAP_PASSWORD=pass\n"
            "BACKUP_OUTPUT=from-env.tar.zst\n"
        )
        assert cli.main(["--plain", "-q"]) == cli.EXIT_OK
        assert (clean_env / "from-env.tar.zst").exists()
        assert "Configuration Summary" not in capsys.readouterr().out

    def test_quiet_keeps_connection_warnings(self, clean_env, single_mock_server, capsys):
        _, port = single_mock_server({"INBOX": [make_message("hi")]})
        output = clean_env / "mail.tar.zst"
        code = cli.main(["localhost", str(port), str(output), "--plain", "--insecure", "-u", "user", "-p", "pass", "-q"])
        assert code == cli.EXIT_OK
        out = capsys.readouterr().out
        assert "Warning: certificate verification is disabled for localhost" in out
        assert "Connected to" not in out

    def test_partial_backup(self, clean_env, single_mock_server, capsys):
        _, port = single_mock_server(
            {"INBOX": [make_message("a"), make_message("b")]}, expunged={("INBOX", 2)}
        )
        output = clean_env / "mail.tar.zst"
        code = cli.main(["localhost", str(port), str(output), "--plain", "-u", "user", "-p", "pass", "-q"])
        assert code == cli.EXIT_INCOMPLETE
        out = capsys.readouterr().out
        assert "Warning: skipped UID 2 in INBOX" in out
        assert "(INCOMPLETE)" in out

    def test_authentication_failure(self, clean_env, single_mock_server, capsys, monkeypatch):
        monkeypatch.setattr(cli.sys, "stdin", io.StringIO())
        _, port = single_mock_server({"INBOX": []}, users={"user": "pass"})
        output = clean_env / "mail.tar.zst"
        code = cli.main(["localhost", str(port), str(output), "--plain", "-u", "user", "-p", "nope", "-q"])
        assert code == cli.EXIT_INCOMPLETE
        assert not output.exists()
        out = capsys.readouterr().out
        assert "not written" in out
        assert "Warning: authentication failed (attempt 1/2)" in out

    def test_usage_error(self, clean_env, capsys):
        assert cli.main(["--plain"]) == cli.EXIT_USAGE
        assert "Error:" in capsys.readouterr().err

    def test_missing_host(self, clean_env, capsys):
        assert cli.main(["out.tar.zst", "-u", "user", "-p", "pass"]) == cli.EXIT_USAGE
        assert "host" in capsys.readouterr().err
