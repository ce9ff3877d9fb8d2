"""
Microsoft OAuth2 Token Acquisition

XOAUTH2 access tokens for Outlook / Microsoft 365 IMAP through the MSAL
device code flow. The tenant ID is discovered from the mailbox domain.
"""

from __future__ import annotations

import http.client
import json
import os
import re
import ssl
import urllib.parse

from imap_backup.errors import AuthError
from imap_backup.utils.imap_common import safe_print

IMAP_SCOPES = ["https://outlook.office365.com/IMAP.AccessAsUser.All"]
DEFAULT_DISCOVERY_HOST = "login.microsoftonline.com"
_TENANT_RE = re.compile(r"/([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})")

_msal_app_cache = {}  # (client_id, tenant_id) -> PublicClientApplication
_tenant_cache = {}  # domain -> tenant_id


def _fetch_json(base, path, timeout=10):
    """GET a JSON document. ``base`` is a host name (HTTPS) or an http(s):// URL."""
    if not base or any(ch in base for ch in "\r\n"):
        raise ValueError("Invalid host")

    use_https = True
    host = base
    if base.startswith(("http://", "https://")):
        parsed = urllib.parse.urlparse(base)
        if not parsed.hostname:
            raise ValueError("Invalid host")
        host = f"{parsed.hostname}:{parsed.port}" if parsed.port else parsed.hostname
        path = parsed.path.rstrip("/") + path
        use_https = parsed.scheme == "https"

    if use_https:
        conn = http.client.HTTPSConnection(host, timeout=timeout, context=ssl.create_default_context())
    else:
        conn = http.client.HTTPConnection(host, timeout=timeout)
    try:
        conn.request("GET", path, headers={"Accept": "application/json"})
        response = conn.getresponse()
        body = response.read()
    finally:
        conn.close()

    if response.status != 200:
        raise RuntimeError(f"Unexpected HTTP status {response.status}")
    return json.loads(body.decode("utf-8"))


def discover_tenant(email: str) -> str:
    """Find the tenant ID for the email's domain via OpenID Connect discovery. Cached per domain."""
    domain = email.split("@")[-1].strip().lower()
    if not domain or "@" not in email:
        raise AuthError(f"Cannot discover Microsoft tenant: no domain in '{email}'")
    if domain in _tenant_cache:
        return _tenant_cache[domain]

    path = f"/{urllib.parse.quote(domain, safe='.-')}/.well-known/openid-configuration"
    discovery = os.getenv("OAUTH2_MICROSOFT_DISCOVERY_URL") or DEFAULT_DISCOVERY_HOST
    try:
        data = _fetch_json(discovery, path)
    except (OSError, http.client.HTTPException, RuntimeError, ValueError) as e:
        raise AuthError(f"Cannot discover Microsoft tenant for '{domain}': {e}") from e

    issuer = data.get("issuer", "")
    match = _TENANT_RE.search(issuer)
    if not match:
        raise AuthError(f"Cannot extract tenant ID from issuer: {issuer}")
    _tenant_cache[domain] = match.group(1)
    return match.group(1)


def acquire_token(client_id: str, email: str, log_fn=safe_print) -> str:
    """
    Return an access token for IMAP. A cached MSAL app is tried silently
    first (refresh token); otherwise the device code prompt is shown.
    """
    tenant_id = discover_tenant(email)

    try:
        import msal
    except ImportError as e:
        raise AuthError("The 'msal' package is required for Microsoft OAuth2: pip install msal") from e

    authority_base = os.getenv("OAUTH2_MICROSOFT_AUTHORITY_BASE_URL") or f"https://{DEFAULT_DISCOVERY_HOST}"
    authority = f"{authority_base.rstrip('/')}/{tenant_id}"

    key = (client_id, tenant_id)
    app = _msal_app_cache.get(key)
    if app is None:
        log_fn(f"Discovered Microsoft tenant: {tenant_id}")
        app = msal.PublicClientApplication(client_id, authority=authority)
        _msal_app_cache[key] = app

    accounts = app.get_accounts()
    if accounts:
        result = app.acquire_token_silent(IMAP_SCOPES, account=accounts[0])
        if result and "access_token" in result:
            return result["access_token"]

    flow = app.initiate_device_flow(scopes=IMAP_SCOPES)
    if "user_code" not in flow:
        raise AuthError(f"Cannot start device flow: {flow.get('error_description', 'unknown error')}")
    log_fn(flow["message"])
    result = app.acquire_token_by_device_flow(flow)
    if "access_token" not in result:
        raise AuthError(f"Cannot acquire Microsoft token: {result.get('error_description', 'unknown error')}")
    return result["access_token"]
