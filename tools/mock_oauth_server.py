import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import urlparse

MOCK_TENANT_ID = "00000000-0000-0000-0000-000000000000"


class MockDiscoveryHandler(BaseHTTPRequestHandler):
    """OpenID Connect discovery endpoint used for Microsoft tenant lookup."""

    def do_GET(self):
        self.server.requests.append(self.path)
        parsed = urlparse(self.path)
        if not parsed.path.endswith("/.well-known/openid-configuration"):
            self._write_json(404, {"error": "not_found"})
            return
        domain = parsed.path.strip("/").split("/")[0]
        if domain in self.server.unknown_domains:
            self._write_json(400, {"error": "invalid_tenant"})
            return
        self._write_json(200, {"issuer": f"https://login.microsoftonline.com/{self.server.tenant_id}/v2.0"})

    def _write_json(self, status, payload):
        body = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, _format, *_args):
        return


class MockOAuthServer(HTTPServer):
    allow_reuse_address = True

    def __init__(self, server_address, handler, tenant_id=MOCK_TENANT_ID, unknown_domains=()):
        super().__init__(server_address, handler)
        self.tenant_id = tenant_id
        self.unknown_domains = set(unknown_domains)
        self.requests = []


def start_server_thread(port=0, **kwargs):
    server = MockOAuthServer(("localhost", port), MockDiscoveryHandler, **kwargs)
    thread = threading.Thread(target=server.serve_forever)
    thread.daemon = True
    thread.start()
    return thread, server
