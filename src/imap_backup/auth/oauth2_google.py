"""
Google OAuth2 Token Acquisition

XOAUTH2 access tokens for Gmail IMAP through the installed-app flow: a
browser consent page plus a local redirect server.
"""

from __future__ import annotations

import os

from imap_backup.errors import AuthError
from imap_backup.utils.imap_common import safe_print

IMAP_SCOPES = ["https://mail.google.com/"]

_creds_cache = {}  # (client_id, client_secret) -> google.oauth2.credentials.Credentials


def _refresh_cached(key):
    creds = _creds_cache.get(key)
    if not creds or not creds.refresh_token:
        return None
    import google.auth.exceptions
    import google.auth.transport.requests

    try:
        creds.refresh(google.auth.transport.requests.Request())
    except google.auth.exceptions.RefreshError:
        _creds_cache.pop(key, None)
        return None
    return creds.token


def acquire_token(client_id: str, client_secret: str, log_fn=safe_print) -> str:
    """Return an access token, refreshing cached credentials before falling back to the browser flow."""
    if not client_secret:
        raise AuthError("Google OAuth2 needs a client secret (--oauth2-client-secret or IMAP_OAUTH2_CLIENT_SECRET)")

    key = (client_id, client_secret)
    token = _refresh_cached(key)
    if token:
        return token

    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError as e:
        raise AuthError(
            "The 'google-auth-oauthlib' package is required for Google OAuth2: pip install google-auth-oauthlib"
        ) from e

    client_config = {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": os.getenv("OAUTH2_GOOGLE_AUTH_URL") or "https://accounts.google.com/o/oauth2/auth",
            "token_uri": os.getenv("OAUTH2_GOOGLE_TOKEN_URL") or "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, scopes=IMAP_SCOPES)
    log_fn("Opening browser for Google authentication...")
    credentials = flow.run_local_server(port=0)
    if not credentials or not credentials.token:
        raise AuthError("Could not acquire Google OAuth2 token")
    _creds_cache[key] = credentials
    return credentials.token
