# -*- coding: utf-8 -*-
"""
Apache-style access logging for http.server request handlers.

Wraps any BaseHTTPRequestHandler subclass so that every request produces one
line in a variant of the Apache Common Log Format (the one Rack::CommonLogger
uses), with the response time in seconds appended:

  127.0.0.1:8080 - - [01/Sep/2013:20:41:08] "GET /index.html HTTP/1.1" 200 1024 0.0023

Usage:

  handler = apachelog.wrap(SimpleHTTPRequestHandler, sys.stdout)
  httpd = ThreadingHTTPServer(("", 8080), handler)
  httpd.serve_forever()

The wrapped class is built exactly like the original by the server and
behaves the same; only the log line is added. The status and body size are
observed through a ResponseRecorder that sits in front of the handler's
wfile, so header bytes never count towards the logged size.
"""

import contextlib
import ipaddress
import ssl
import sys
import threading
import time
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler

# Rack::CommonLogger variant with response time in seconds at the end.
APACHE_FORMAT = '%s:%s - - [%s] "%s %s %s" %d %d %0.4f\n'

MONTHS = BaseHTTPRequestHandler.monthname

# ─── Address helpers ─────────────────────────────────────────────────────────
def split_host_port(hostport: str):
    """Split "host:port", "[v6]:port" into (host, port). Raises ValueError."""
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {hostport!r}")
        rest = hostport[end + 1:]
        if not rest:
            raise ValueError(f"missing port in address {hostport!r}")
        if not rest.startswith(":"):
            raise ValueError(f"unexpected text after ']' in address {hostport!r}")
        host, port = hostport[1:end], rest[1:]
        if "[" in host:
            raise ValueError(f"unexpected '[' in address {hostport!r}")
    else:
        idx = hostport.rfind(":")
        if idx < 0:
            raise ValueError(f"missing port in address {hostport!r}")
        host, port = hostport[:idx], hostport[idx + 1:]
        if ":" in host:
            raise ValueError(f"too many colons in address {hostport!r}")
        if "[" in host or "]" in host:
            raise ValueError(f"unexpected bracket in address {hostport!r}")
    if "[" in port or "]" in port:
        raise ValueError(f"unexpected bracket in address {hostport!r}")
    return host, port

def format_remote_addr(client_address) -> str:
    """socketserver client_address tuple -> "host:port" ("[v6]:port")."""
    if isinstance(client_address, str):
        return client_address
    try:
        host, port = str(client_address[0]), client_address[1]
    except (IndexError, TypeError):
        return str(client_address)
    # Dual-stack listeners see IPv4 peers as ::ffff:a.b.c.d
    try:
        mapped = ipaddress.ip_address(host).ipv4_mapped
    except ValueError:
        mapped = None
    if mapped is not None:
        host = str(mapped)
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"

def client_ip(remote_addr: str) -> str:
    """
    Best-effort host part of a peer address. Peer addresses look like
      127.0.0.1:36341
      [::1]:44092
    IPv6 hosts come back bracketed; anything unparsable comes back as-is.
    """
    try:
        host, _ = split_host_port(remote_addr)
    except ValueError:
        return remote_addr
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return host

def server_port(host_header, secure: bool) -> str:
    # Default ports (80/443) do not show up in the Host header.
    try:
        _, port = split_host_port(host_header or "")
    except ValueError:
        port = ""
    # An empty port ("example.com:") also falls back, unlike a plain
    # SplitHostPort which would log it empty.
    if not port:
        return "443" if secure else "80"
    return port

# ─── Record ──────────────────────────────────────────────────────────────────
class Record:
    """Everything one log line needs, for a single request."""

    def __init__(self, ip, port, method, uri, protocol, *, clock=None):
        self.ip = ip
        self.port = port
        self.method = method
        self.uri = uri
        self.protocol = protocol
        self.status = int(HTTPStatus.OK)
        self.response_bytes = 0
        self.time = time.time()
        self._clock = time.monotonic() if clock is None else clock
        self.elapsed = 0.0

    def finish(self):
        now = time.monotonic()
        self.time = time.time()
        self.elapsed = max(now - self._clock, 0.0)

    def timestamp(self) -> str:
        t = time.localtime(self.time)
        return "%02d/%s/%04d:%02d:%02d:%02d" % (
            t.tm_mday, MONTHS[t.tm_mon], t.tm_year, t.tm_hour, t.tm_min, t.tm_sec)

    def format(self) -> str:
        return APACHE_FORMAT % (
            self.ip, self.port, self.timestamp(), self.method, self.uri,
            self.protocol, self.status, self.response_bytes, self.elapsed)

# ─── Sink ────────────────────────────────────────────────────────────────────
class LogSink:
    """
    Serializes log lines onto a text stream. One lock per sink so lines from
    concurrent requests never interleave. Write errors are dropped: a broken
    log stream must not fail the request being logged.
    """

    def __init__(self, out=None):
        self.out = out
        self._lock = threading.Lock()

    def write(self, line: str):
        out = self.out if self.out is not None else sys.stdout
        with self._lock:
            try:
                out.write(line)
                out.flush()
            except (OSError, ValueError):
                pass

# ─── Recording response writer ───────────────────────────────────────────────
class ResponseRecorder:
    """
    Sits in front of a handler's wfile. Capabilities: set_status(), write(),
    flush(), hijack(). Everything else is forwarded to the wrapped stream.
    """

    def __init__(self, raw):
        self.raw = raw
        self.record = None
        self._paused = False
        self._hijacked = False

    def begin(self, record):
        self.record = record
        self._paused = False
        self._hijacked = False

    def end(self):
        record, self.record = self.record, None
        return record

    def _recording(self) -> bool:
        return self.record is not None and not self._paused and not self._hijacked

    def set_status(self, code):
        if self.record is not None and not self._hijacked:
            self.record.status = int(code)

    def write(self, data):
        written = self.raw.write(data)
        if written is None:
            written = len(data)
        if self._recording():
            self.record.response_bytes += written
        return written

    @contextlib.contextmanager
    def paused(self):
        """Writes inside this block (status line, headers) are not counted."""
        prev, self._paused = self._paused, True
        try:
            yield self
        finally:
            self._paused = prev

    def flush(self):
        return self.raw.flush()

    def hijack(self):
        """Hand the raw stream to the caller; nothing written after this is recorded."""
        self._hijacked = True
        return self.raw

    def __getattr__(self, name):
        return getattr(self.raw, name)

# ─── Handler wrapper ─────────────────────────────────────────────────────────
class LoggingMixin:
    """
    Mixed in front of a BaseHTTPRequestHandler subclass by wrap(). Expects a
    class attribute `log_sink`.
    """

    log_sink = None

    def setup(self):
        super().setup()
        self._recorder = ResponseRecorder(self.wfile)
        self.wfile = self._recorder

    def is_secure(self) -> bool:
        return isinstance(self.connection, ssl.SSLSocket)

    def parse_request(self):
        clock = time.monotonic()
        if not super().parse_request():
            return False
        words = self.requestline.split()
        record = Record(
            ip=client_ip(format_remote_addr(self.client_address)),
            port=server_port(self.headers.get("Host"), self.is_secure()),
            method=self.command,
            uri=words[1] if len(words) > 1 else self.path,
            protocol=self.request_version,
            clock=clock,
        )
        self._recorder.begin(record)
        return True

    def handle_one_request(self):
        try:
            super().handle_one_request()
        finally:
            record = self._recorder.end()
            if record is not None:
                record.finish()
                self.log_sink.write(record.format())

    def send_response(self, code, message=None):
        self._recorder.set_status(code)
        super().send_response(code, message)

    def flush_headers(self):
        with self._recorder.paused():
            super().flush_headers()

    def hijack(self):
        """
        Take over the connection. Returns (connection, rfile, raw wfile); the
        server closes the connection once the handler returns.
        """
        self.close_connection = True
        return self.connection, self.rfile, self._recorder.hijack()

    def log_request(self, code="-", size="-"):
        # The access line is written by handle_one_request() once the
        # response is complete.
        pass

def wrap(handler_class, out=None):
    """
    Return a handler class that behaves like handler_class and writes one
    access log line per request to out (a text stream or a LogSink, default
    sys.stdout).
    """
    sink = out if isinstance(out, LogSink) else LogSink(out)
    name = "Logging" + handler_class.__name__
    return type(name, (LoggingMixin, handler_class), {
        "log_sink": sink,
        "__module__": handler_class.__module__,
    })
