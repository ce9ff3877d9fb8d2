"""
OAuth2 Credentials

Picks the OAuth2 provider from the IMAP host name and turns an access token
into XOAUTH2 Credentials for ImapSession.login().
"""

from __future__ import annotations

from imap_backup.auth import oauth2_google, oauth2_microsoft
from imap_backup.config import MECHANISM_XOAUTH2, Credentials
from imap_backup.errors import AuthError
from imap_backup.utils.imap_common import safe_print

PROVIDER_MICROSOFT = "microsoft"
PROVIDER_GOOGLE = "google"


def detect_oauth2_provider(host: str):
    """Return "microsoft", "google", or None if the host is not recognised."""
    host_lower = host.lower()
    if "outlook" in host_lower or "office365" in host_lower or "microsoft" in host_lower:
        return PROVIDER_MICROSOFT
    if "gmail" in host_lower or "google" in host_lower:
        return PROVIDER_GOOGLE
    return None


def acquire_token(host, client_id, email, client_secret=None, log_fn=safe_print) -> str:
    provider = detect_oauth2_provider(host)
    if provider is None:
        raise AuthError(f"Could not detect OAuth2 provider from host '{host}'")
    log_fn(f"Acquiring OAuth2 token ({provider})...")
    if provider == PROVIDER_MICROSOFT:
        return oauth2_microsoft.acquire_token(client_id, email, log_fn=log_fn)
    return oauth2_google.acquire_token(client_id, client_secret, log_fn=log_fn)


def oauth2_credentials(host, client_id, email, client_secret=None, log_fn=safe_print) -> Credentials:
    """Acquire a token and wrap it for XOAUTH2 login. Each call may refresh the token."""
    token = acquire_token(host, client_id, email, client_secret, log_fn=log_fn)
    return Credentials(email, token, mechanism=MECHANISM_XOAUTH2)


def auth_description(host: str, client_id=None) -> str:
    if client_id:
        return f"OAuth2/{detect_oauth2_provider(host)} (XOAUTH2)"
    return "Basic (password)"
