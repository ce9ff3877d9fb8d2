"""
Tests for config.py

Tests cover:
- Setting precedence: argument, then .env, then environment
- Security mode and default port resolution
- ConnectionConfig / BackupOptions validation
- Credentials handling (wipe, redaction, missing values)
"""

import pytest

from imap_backup import config
from imap_backup.config import (
    BackupOptions,
    ConnectionConfig,
    Credentials,
    SecurityMode,
    TrustPolicy,
    build_connection_config,
    resolve_credentials,
)
from imap_backup.errors import ConfigError


class TestResolveSetting:
    def test_argument_wins(self):
        assert config.resolve_setting("arg", "IMAP_HOST", {"IMAP_HOST": "dotenv"}, {"IMAP_HOST": "env"}) == "arg"

    def test_dotenv_before_environment(self):
        assert config.resolve_setting(None, "IMAP_HOST", {"IMAP_HOST": "dotenv"}, {"IMAP_HOST": "env"}) == "dotenv"

    def test_environment_fallback(self):
        assert config.resolve_setting("", "IMAP_HOST", {"IMAP_HOST": "  "}, {"IMAP_HOST": "env"}) == "env"

    def test_nothing_set(self):
        assert config.resolve_setting(None, "IMAP_HOST", {}, {}) is None


class TestLoadDotenv:
    def test_reads_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("IMAP_HOST=imap.example.com\nIMAP_USERNAME='me@example.com'\nEMPTY\n")
        values = config.load_dotenv_values(str(env_file))
        assert values == {"IMAP_HOST": "imap.example.com", "IMAP_USERNAME": "me@example.com"}

    def test_missing_file(self, tmp_path):
        assert config.load_dotenv_values(str(tmp_path / "nope.env")) == {}

    def test_defaults_to_working_directory(self, tmp_path, monkeypatch):
        (tmp_path / ".env").write_text("BACKUP_OUTPUT=/backups/mail.tar.zst\n")
        monkeypatch.chdir(tmp_path)
        assert config.load_dotenv_values()["BACKUP_OUTPUT"] == "/backups/mail.tar.zst"


class TestConnectionConfig:
    def test_implicit_tls_default(self):
        c = build_connection_config("imap.example.com", dotenv={}, environ={})
        assert c.security is SecurityMode.IMPLICIT_TLS
        assert c.port == 993
        assert c.trust is TrustPolicy.VERIFY
        assert c.encrypted

    def test_starttls_port(self):
        c = build_connection_config("imap.example.com", starttls=True, dotenv={}, environ={})
        assert c.security is SecurityMode.STARTTLS
        assert c.port == 143

    def test_plain_is_not_encrypted(self):
        c = build_connection_config("imap.example.com", plain=True, dotenv={}, environ={})
        assert not c.encrypted

    def test_insecure(self):
        c = build_connection_config("imap.example.com", insecure=True, dotenv={}, environ={})
        assert c.trust is TrustPolicy.ACCEPT_UNTRUSTED

    def test_host_and_port_from_environment(self):
        c = build_connection_config(None, dotenv={}, environ={"IMAP_HOST": "mail.local", "IMAP_PORT": "1993"})
        assert (c.host, c.port) == ("mail.local", 1993)

    def test_conflicting_modes(self):
        with pytest.raises(ConfigError):
            build_connection_config("h", starttls=True, plain=True, dotenv={}, environ={})

    def test_missing_host(self):
        with pytest.raises(ConfigError, match="host"):
            build_connection_config(None, dotenv={}, environ={})

    @pytest.mark.parametrize("port", ["abc", "0", "70000"])
    def test_invalid_port(self, port):
        with pytest.raises(ConfigError):
            build_connection_config("h", port, dotenv={}, environ={})

    def test_invalid_timeout(self):
        with pytest.raises(ConfigError):
            ConnectionConfig(host="h", port=993, timeout=0)


class TestBackupOptions:
    def test_defaults(self):
        options = BackupOptions()
        assert options.on_mailbox_error is config.ErrorPolicy.SKIP
        assert options.on_message_error is config.ErrorPolicy.SKIP
        assert options.compression_level == 3

    @pytest.mark.parametrize("kwargs", [{"login_retries": -1}, {"block_size": 100}, {"queue_depth": 0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ConfigError):
            BackupOptions(**kwargs)


class TestCredentials:
    def test_wipe(self):
        creds = Credentials("user", "s3cret")
        assert creds.secret() == "s3cret"
        creds.wipe()
        assert creds.wiped
        with pytest.raises(ConfigError):
            creds.secret()

    def test_repr_redacts_secret(self):
        assert "s3cret" not in repr(Credentials("user", "s3cret"))

    @pytest.mark.parametrize("user, secret", [("", "x"), ("user", "")])
    def test_missing_values(self, user, secret):
        with pytest.raises(ConfigError):
            Credentials(user, secret)

    def test_unknown_mechanism(self):
        with pytest.raises(ConfigError):
            Credentials("user", "x", mechanism="kerberos")

    def test_resolve_credentials_precedence(self):
        creds = resolve_credentials(
            None,
            None,
            dotenv={"IMAP_USERNAME": "dotenv-user"},
            environ={"IMAP_USERNAME": "env-user", "IMAP_PASSWORD": "env-pass"},
        )
        assert creds.username == "dotenv-user"
        assert creds.secret() == "env-pass"

    def test_resolve_credentials_missing_password(self):
        with pytest.raises(ConfigError, match="password"):
            resolve_credentials("user", None, dotenv={}, environ={})
