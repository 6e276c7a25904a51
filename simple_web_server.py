#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Simple web server that serves files from the current directory.

What it does:
- Listens for HTTP on every port given with -p and for HTTPS on every port
  given with -sp (both comma-separated; the two lists are independent)
- For HTTPS, generates a fresh self-signed certificate + key into temp files
  on every start and removes them again on exit or Ctrl-C
- Writes one Apache-style access line per request to stdout (see apachelog)

Run:
  simple-web-server -p 8080 -sp 8443
"""

import os
import sys
import threading
import itertools
import time
import socket
import ssl
import signal
import atexit
import argparse
import ipaddress
import platform
from datetime import datetime, timedelta, timezone
from http.server import ThreadingHTTPServer, SimpleHTTPRequestHandler

import apachelog

__version__ = "1.0"

# ─── Constants ───────────────────────────────────────────────────────────────
DEFAULT_HTTP_PORTS  = "80"
DEFAULT_HTTPS_PORTS = "443"
KEY_SIZE            = 1024
CERT_VALIDITY       = timedelta(days=365)
TEMP_TRIES          = 10000
TEMP_MAX_CONFLICTS  = 10

# Globals for cleanup
_active_servers = []
_temp_files     = []

# Spinner for nicer UX
class Spinner:
    def __init__(self, msg):
        self.msg = msg
        self.spin = itertools.cycle("|/-\\")
        self._stop = threading.Event()
        self._thr = threading.Thread(target=self._run, daemon=True)
    def _run(self):
        while not self._stop.is_set():
            sys.stdout.write(f"\r{self.msg} {next(self.spin)}")
            sys.stdout.flush()
            time.sleep(0.1)
        sys.stdout.write("\r" + " "*(len(self.msg)+2) + "\r"); sys.stdout.flush()
    def __enter__(self): self._thr.start()
    def __exit__(self, *a): self._stop.set(); self._thr.join()

def version_string() -> str:
    return (f"simple_web_server {__version__} "
            f"({platform.python_implementation()} {platform.python_version()} "
            f"on {platform.system().lower()})")

# ─── CLI ─────────────────────────────────────────────────────────────────────
def parse_ports(csv: str) -> list:
    """ "80,8080" -> ["80", "8080"]. Blank entries are skipped. """
    ports = []
    for p in csv.split(","):
        p = p.strip()
        if not p:
            continue
        if not p.isdigit() or not 0 < int(p) < 65536:
            raise argparse.ArgumentTypeError(f"invalid port: {p!r}")
        ports.append(p)
    if not ports:
        raise argparse.ArgumentTypeError(f"no ports in {csv!r}")
    return ports

class _Parser(argparse.ArgumentParser):
    # Usage and help go to stderr, stdout carries the access log.
    def print_help(self, file=None):
        super().print_help(file or sys.stderr)

def parse_args(argv=None):
    p = _Parser(
        description=version_string(),
        usage="%(prog)s -p http_ports -sp https_ports",
        epilog="Report bugs to <ryan@rchapman.org>.",
    )
    p.add_argument("-p", dest="http_ports", metavar="PORTS", type=parse_ports,
                   default=DEFAULT_HTTP_PORTS,
                   help="HTTP ports to listen on, separated by commas. Defaults to 80")
    p.add_argument("-sp", dest="https_ports", metavar="PORTS", type=parse_ports,
                   default=DEFAULT_HTTPS_PORTS,
                   help="HTTPS (SSL) ports to listen on, separated by commas. Defaults to 443")
    return p.parse_args(argv)

# ─── Temp files ──────────────────────────────────────────────────────────────
def temp_dir(environ=None) -> str:
    env = os.environ if environ is None else environ
    for var in ("TMPDIR", "TMP", "TEMP"):
        if env.get(var):
            return env[var]
    return "/tmp"

class TempNamer:
    """
    Unique temp file names: prefix + 9 pseudo-random digits. The generator
    state is shared between callers and guarded by a lock.
    """

    def __init__(self, seed=0, directory=None):
        self._lock = threading.Lock()
        self._state = seed & 0xFFFFFFFF
        self.directory = directory

    @staticmethod
    def reseed() -> int:
        return (time.time_ns() + os.getpid()) & 0xFFFFFFFF

    def set_seed(self, seed: int):
        with self._lock:
            self._state = seed & 0xFFFFFFFF

    def next_suffix(self) -> str:
        with self._lock:
            r = self._state
            if r == 0:
                r = self.reseed()
            r = (r * 1664525 + 1013904223) & 0xFFFFFFFF  # Numerical Recipes
            self._state = r
        return str(1000000000 + r % 1000000000)[1:]

    def create(self, prefix: str) -> str:
        """Create an empty 0600 file that did not exist before; return its path."""
        directory = self.directory or temp_dir()
        conflicts = 0
        for _ in range(TEMP_TRIES):
            path = os.path.join(directory, prefix + self.next_suffix())
            try:
                fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                conflicts += 1
                if conflicts > TEMP_MAX_CONFLICTS:
                    self.set_seed(self.reseed())
                continue
            os.close(fd)
            return path
        raise FileExistsError(f"could not create a unique temp file for {prefix!r} in {directory}")

# ─── Certificates ────────────────────────────────────────────────────────────
def generate_self_signed(cert_file, key_file):
    from cryptography.hazmat.primitives import serialization, hashes
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509 import SubjectAlternativeName, DNSName, IPAddress
    from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
    import cryptography.x509 as x509

    keyobj = rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)

    san  = SubjectAlternativeName([IPAddress(ipaddress.ip_address("127.0.0.1")), DNSName("localhost")])
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Acme Co")])

    not_before = datetime.now(timezone.utc)
    not_after  = not_before + CERT_VALIDITY

    with Spinner("Generating self-signed certificate…"):
        cert = (x509.CertificateBuilder()
                .subject_name(name).issuer_name(name)
                .public_key(keyobj.public_key())
                .serial_number(x509.random_serial_number())
                .not_valid_before(not_before).not_valid_after(not_after)
                .add_extension(x509.KeyUsage(
                    digital_signature=True, key_encipherment=True,
                    content_commitment=False, data_encipherment=False,
                    key_agreement=False, key_cert_sign=False, crl_sign=False,
                    encipher_only=False, decipher_only=False), critical=True)
                .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
                .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
                .add_extension(san, critical=False)
                .sign(keyobj, hashes.SHA256()))

    with open(cert_file, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
    fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with open(fd, "wb") as f:
        f.write(keyobj.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()))

def make_ssl_context(cert_file, key_file):
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    # 1024-bit RSA is below OpenSSL's default security level.
    context.set_ciphers("DEFAULT:@SECLEVEL=1")
    context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    return context

def create_tls_material(namer=None):
    """Temp cert/key pair for this run. Any failure is fatal."""
    namer = namer or TempNamer()
    try:
        cert_file = namer.create("cert.pem")
        _temp_files.append(cert_file)
        key_file = namer.create("key.pem")
        _temp_files.append(key_file)
        generate_self_signed(cert_file, key_file)
        return make_ssl_context(cert_file, key_file)
    except (OSError, ValueError) as e:
        raise SystemExit(f"failed to create TLS certificate: {e}")

# ─── Servers ─────────────────────────────────────────────────────────────────
def make_static_handler(root):
    root = os.fspath(root)

    class StaticFileHandler(SimpleHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def __init__(self, *args, **kwargs):
            super().__init__(*args, directory=root, **kwargs)

        def log_message(self, format, *args):
            pass  # access lines come from apachelog

    return StaticFileHandler

class ReusableHTTPServer(ThreadingHTTPServer):
    allow_reuse_address = True
    daemon_threads = True

    def finish_request(self, request, client_address):
        # TLS handshake runs here, on the connection's own thread, so a
        # silent client cannot stall accept().
        if isinstance(request, ssl.SSLSocket):
            try:
                request.do_handshake()
            except OSError:
                return  # dropped; shutdown_request() closes it
        super().finish_request(request, client_address)

# Listens on :: and takes IPv4 peers as well.
class DualStackHTTPServer(ReusableHTTPServer):
    address_family = socket.AF_INET6

    def server_bind(self):
        try: self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        except OSError: pass
        return super().server_bind()

def make_server(port, handler_class, context=None, host=""):
    server_cls = ReusableHTTPServer
    if not host and socket.has_dualstack_ipv6():
        server_cls = DualStackHTTPServer
    httpd = server_cls((host, int(port)), handler_class)
    if context is not None:
        httpd.socket = context.wrap_socket(httpd.socket, server_side=True, do_handshake_on_connect=False)
    return httpd

def bind_servers(ports, handler_class, context=None, host=""):
    servers = []
    for port in ports:
        try:
            httpd = make_server(port, handler_class, context=context, host=host)
        except OSError as e:
            print(f"⚠ Unable to listen on port {port}: {e}", file=sys.stderr)
            continue
        servers.append(httpd)
        print(f"Listening on port {port}")
    return servers

def serve(servers):
    threads = []
    for httpd in servers:
        t = threading.Thread(target=httpd.serve_forever, kwargs={"poll_interval": 0.5}, daemon=True)
        t.start()
        threads.append(t)
    return threads

# ─── Signals / Cleanup ───────────────────────────────────────────────────────
def _shutdown_httpd(httpd, *, wait=True, timeout=3.0):
    # Run shutdown off-thread so signal handlers don't deadlock serve_forever().
    def _do_shutdown():
        try: httpd.shutdown()
        except Exception: pass
        try: httpd.server_close()
        except Exception: pass

    t = threading.Thread(target=_do_shutdown, daemon=True)
    t.start()
    if wait:
        t.join(timeout)

def _cleanup(*, wait_httpd=True):
    servers = list(_active_servers)
    _active_servers.clear()
    for httpd in servers:
        _shutdown_httpd(httpd, wait=wait_httpd)
    while _temp_files:
        path = _temp_files.pop()
        try: os.remove(path)
        except FileNotFoundError: pass

atexit.register(_cleanup)

def _signal_handler(signum, frame):
    print("\nCtrl-C: ", end="", flush=True)
    _cleanup(wait_httpd=False)
    sys.exit(1)

def install_signal_handlers():
    signal.signal(signal.SIGINT,  _signal_handler)
    if hasattr(signal, "SIGTERM"): signal.signal(signal.SIGTERM, _signal_handler)

# ─── Main ────────────────────────────────────────────────────────────────────
def main(argv=None):
    install_signal_handlers()
    args = parse_args(argv)

    handler = apachelog.wrap(make_static_handler(os.getcwd()), sys.stdout)

    # No listener starts before the TLS material exists.
    context = create_tls_material() if args.https_ports else None

    _active_servers.extend(bind_servers(args.http_ports, handler))
    if context is not None:
        _active_servers.extend(bind_servers(args.https_ports, handler, context=context))
    if not _active_servers:
        _cleanup()
        raise SystemExit("No listener could be started.")

    threads = serve(_active_servers)
    try:
        for t in threads:
            t.join()
    finally:
        _cleanup()

# ─── Entrypoint ──────────────────────────────────────────────────────────────
if __name__ == "__main__":
    main()
