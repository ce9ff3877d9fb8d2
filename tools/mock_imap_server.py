import base64
import re
import socket
import socketserver
import threading
import zlib

RESPONSE_SELECT_FIRST = "NO Examine first"
DEFAULT_INTERNALDATE = "01-Jan-2024 10:00:00 +0000"

LITERAL_RE = re.compile(rb"\{(\d+)\+?\}\r\n$")
TOKEN_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|\x00(\d+)\x00|(\([^)]*\))|(\S+)')


class _DeflateStream:
    """Server side of COMPRESS=DEFLATE: file-like reads and writes over raw DEFLATE."""

    def __init__(self, sock):
        self._sock = sock
        self._compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -zlib.MAX_WBITS)
        self._decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
        self._buffer = b""

    def _fill(self):
        raw = self._sock.recv(65536)
        if not raw:
            return False
        self._buffer += self._decompressor.decompress(raw)
        return True

    def readline(self):
        while b"\n" not in self._buffer:
            if not self._fill():
                line, self._buffer = self._buffer, b""
                return line
        idx = self._buffer.index(b"\n") + 1
        line, self._buffer = self._buffer[:idx], self._buffer[idx:]
        return line

    def read(self, n):
        while len(self._buffer) < n:
            if not self._fill():
                break
        data, self._buffer = self._buffer[:n], self._buffer[n:]
        return data

    def write(self, data):
        self._sock.sendall(self._compressor.compress(data) + self._compressor.flush(zlib.Z_SYNC_FLUSH))

    def flush(self):
        pass

    def close(self):
        pass


class MockIMAPHandler(socketserver.StreamRequestHandler):
    """
    A minimal IMAP4rev1 mock server handler for backup tests.
    Read-only subset: CAPABILITY, STARTTLS, LOGIN, AUTHENTICATE XOAUTH2,
    COMPRESS, LIST, EXAMINE, FETCH 1:*, UID FETCH and LOGOUT.
    """

    def handle(self):
        self.tls_active = False
        self.compressed = False
        self.authenticated = False
        self.selected_folder = None

        if self.server.implicit_tls:
            try:
                self._start_tls()
            except (OSError, ValueError):
                return

        greeting = self.server.greeting or f"* OK [CAPABILITY {self.capabilities()}] Mock IMAP Server Ready"
        self.wfile.write(f"{greeting}\r\n".encode())

        while True:
            try:
                command = self.read_command()
                if command is None:
                    break
                tag, cmd, args = command
                self.server.commands.append(" ".join([cmd] + [a for a in args if cmd != "LOGIN"]))
                if not self.dispatch(tag, cmd, args):
                    break
            except (OSError, ValueError, IndexError):
                break

    # -- wire helpers -------------------------------------------------------

    def _start_tls(self):
        self.connection = self.server.ssl_context.wrap_socket(self.connection, server_side=True)
        self.request = self.connection
        self.rfile = self.connection.makefile("rb")
        self.wfile = socketserver._SocketWriter(self.connection)
        self.tls_active = True

    def read_command(self):
        line = self.rfile.readline()
        if not line:
            return None
        literals = []
        text = b""
        while True:
            match = LITERAL_RE.search(line)
            if not match:
                text += line
                break
            text += line[: match.start()] + f"\x00{len(literals)}\x00".encode()
            self.wfile.write(b"+ Ready for literal data\r\n")
            literals.append(self.rfile.read(int(match.group(1))))
            line = self.rfile.readline()

        tokens = []
        for m in TOKEN_RE.finditer(text.decode("utf-8").strip()):
            if m.group(1) is not None:
                tokens.append(re.sub(r"\\(.)", r"\1", m.group(1)))
            elif m.group(2) is not None:
                tokens.append(literals[int(m.group(2))].decode("utf-8"))
            else:
                tokens.append(m.group(3) or m.group(4))
        if len(tokens) < 2:
            return None
        return tokens[0], tokens[1].upper(), tokens[2:]

    def send_response(self, tag, message):
        self.wfile.write(f"{tag} {message}\r\n".encode())

    def capabilities(self):
        caps = ["IMAP4rev1", "AUTH=XOAUTH2"]
        if self.server.ssl_context is not None and self.server.starttls and not self.tls_active:
            caps.append("STARTTLS")
        if self.server.login_disabled and not self.tls_active:
            caps.append("LOGINDISABLED")
        if self.server.compress and not self.compressed:
            caps.append("COMPRESS=DEFLATE")
        return " ".join(caps)

    @staticmethod
    def quote(value):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'

    # -- commands ------------------------------------------------------------

    def dispatch(self, tag, cmd, args):
        if cmd == "CAPABILITY":
            self.wfile.write(f"* CAPABILITY {self.capabilities()}\r\n".encode())
            self.send_response(tag, "OK CAPABILITY completed")


        elif cmd == "LOGOUT":
            self.wfile.write(b"* BYE Mock IMAP Server logging out\r\n")
            self.send_response(tag, "OK LOGOUT completed")
            return False

        elif cmd == "STARTTLS":
            if self.server.ssl_context is None or self.tls_active:
                self.send_response(tag, "BAD STARTTLS not available")
            else:
                self.send_response(tag, "OK Begin TLS negotiation now")
                self._start_tls()

        elif cmd == "LOGIN":
            user, password = args[0], args[1]
            if self.server.login_disabled and not self.tls_active:
                self.send_response(tag, "NO LOGIN disabled")
            elif self.server.users is not None and self.server.users.get(user) != password:
                self.server.failed_logins += 1
                self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid credentials")
            else:
                self.authenticated = True
                self.send_response(tag, "OK LOGIN completed")

        elif cmd == "AUTHENTICATE":
            self.wfile.write(b"+ \r\n")
            payload = base64.b64decode(self.rfile.readline().strip()).decode("utf-8")
            token = re.search(r"auth=Bearer ([^\x01]*)", payload)
            if token and token.group(1) in self.server.tokens:
                self.authenticated = True
                self.send_response(tag, "OK AUTHENTICATE completed")
            else:
                self.wfile.write(b"+ eyJzdGF0dXMiOiI0MDEifQ==\r\n")
                self.rfile.readline()
                self.send_response(tag, "NO [AUTHENTICATIONFAILED] Invalid token")

        elif cmd == "COMPRESS":
            if not self.server.compress or self.compressed:
                self.send_response(tag, "NO Compression not available")
            else:
                self.send_response(tag, "OK DEFLATE active")
                stream = _DeflateStream(self.connection)
                self.rfile = self.wfile = stream
                self.compressed = True

        elif not self.authenticated:
            self.send_response(tag, "BAD Not authenticated")

        elif cmd == "LIST":
            for name in sorted(self.server.folders):
                flags = "\\Noselect" if name in self.server.noselect else "\\HasNoChildren"
                self.wfile.write(f'* LIST ({flags}) "{self.server.delimiter}" {self.quote(name)}\r\n'.encode())
            self.send_response(tag, "OK LIST completed")

        elif cmd in ("EXAMINE", "SELECT"):
            folder = args[0]
            if self.server.busy.get(folder, 0) > 0:
                self.server.busy[folder] -= 1
                self.send_response(tag, "NO [UNAVAILABLE] Server Busy, try again later")
                return True
            if folder in self.server.fail_select or folder not in self.server.folders or folder in self.server.noselect:
                self.selected_folder = None
                self.send_response(tag, "NO [NONEXISTENT] Mailbox not available")
            else:
                self.selected_folder = folder
                count = len(self.server.folders[folder])
                self.wfile.write(f"* {count} EXISTS\r\n".encode())
                self.wfile.write(b"* 0 RECENT\r\n")
                self.wfile.write(b"* FLAGS (\\Seen \\Answered \\Flagged \\Deleted \\Draft)\r\n")
                self.wfile.write(f"* OK [UIDVALIDITY {self.server.uid_validity}] UIDs valid\r\n".encode())
                self.send_response(tag, f"OK [READ-ONLY] {cmd} completed")

        elif cmd == "FETCH":
            if not self.selected_folder:
                self.send_response(tag, RESPONSE_SELECT_FIRST)
            else:
                for seq, m in enumerate(self.server.folders[self.selected_folder], start=1):
                    self.wfile.write(f"* {seq} FETCH (UID {m['uid']} RFC822.SIZE {len(m['content'])})\r\n".encode())
                self.send_response(tag, "OK FETCH completed")

        elif cmd == "UID" and args and args[0].upper() == "FETCH":
            if not self.selected_folder:
                self.send_response(tag, RESPONSE_SELECT_FIRST)
            else:
                return self.uid_fetch(tag, int(args[1]), " ".join(args[2:]).upper())

        else:
            self.send_response(tag, "BAD Command not recognized")
        return True

    def uid_fetch(self, tag, uid, items):
        msgs = self.server.folders[self.selected_folder]
        found = [(seq, m) for seq, m in enumerate(msgs, start=1) if m["uid"] == uid]
        if not found or (self.selected_folder, uid) in self.server.expunged:
            # Expunged messages simply produce no FETCH data.
            self.send_response(tag, "OK UID FETCH completed")
            return True

        seq, m = found[0]
        content = m["content"]
        if "BODY" not in items:
            flags = " ".join(sorted(m["flags"]))
            date = m.get("internaldate", DEFAULT_INTERNALDATE)
            self.wfile.write(
                f'* {seq} FETCH (UID {uid} FLAGS ({flags}) INTERNALDATE "{date}" RFC822.SIZE {len(content)})\r\n'.encode()
            )
            self.send_response(tag, "OK UID FETCH completed")
            return True

        self.wfile.write(f"* {seq} FETCH (UID {uid} BODY[] {{{len(content)}}}\r\n".encode())
        if (self.selected_folder, uid) in self.server.disconnect_on:
            self.wfile.write(content[: len(content) // 2])
            self.connection.shutdown(socket.SHUT_RDWR)
            return False
        self.wfile.write(content)
        self.wfile.write(b")\r\n")
        self.send_response(tag, "OK UID FETCH completed")
        return True


class MockIMAPServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(
        self,
        server_address,
        request_handler_class,
        initial_folders=None,
        *,
        noselect=(),
        users=None,
        tokens=(),
        ssl_context=None,
        implicit_tls=False,
        starttls=False,
        login_disabled=False,
        compress=False,
        fail_select=(),
        busy=None,
        expunged=(),
        disconnect_on=(),
        delimiter="/",
        uid_validity=1,
        greeting=None,
    ):
        super().__init__(server_address, request_handler_class)
        self.folders = {}
        for fname, contents in (initial_folders or {"INBOX": []}).items():
            self.folders[fname] = []
            for i, c in enumerate(contents):
                if isinstance(c, bytes):
                    self.folders[fname].append({"uid": i + 1, "flags": set(), "content": c})
                else:
                    self.folders[fname].append(c)
        self.noselect = set(noselect)
        for name in self.noselect:
            self.folders.setdefault(name, [])
        self.users = users
        self.tokens = set(tokens)
        self.ssl_context = ssl_context
        self.implicit_tls = implicit_tls
        self.starttls = starttls
        self.login_disabled = login_disabled
        self.compress = compress
        self.fail_select = set(fail_select)
        self.busy = dict(busy or {})
        self.expunged = set(expunged)
        self.disconnect_on = set(disconnect_on)
        self.delimiter = delimiter
        self.uid_validity = uid_validity
        self.greeting = greeting
        self.commands = []
        self.failed_logins = 0


def start_server_thread(port=0, initial_folders=None, **kwargs):
    server = MockIMAPServer(("localhost", port), MockIMAPHandler, initial_folders, **kwargs)
    t = threading.Thread(target=server.serve_forever)
    t.daemon = True
    t.start()
    return server, server.server_address[1]
