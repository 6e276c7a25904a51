import io
import os
import sys
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

import apachelog
import simple_web_server


INDEX_HTML = b"<html><body><h1>It works!</h1></body></html>\n"


@pytest.fixture
def site(tmp_path):
    """A served root with a single index.html"""
    (tmp_path / "index.html").write_bytes(INDEX_HTML)
    return tmp_path


@pytest.fixture
def start_server():
    """Start a logging server on 127.0.0.1; returns (port, log stream)"""
    servers = []

    def _start(handler_class, context=None):
        out = io.StringIO()
        handler = apachelog.wrap(handler_class, out)
        httpd = simple_web_server.make_server(0, handler, context=context, host="127.0.0.1")
        servers.append(httpd)
        simple_web_server.serve([httpd])
        return httpd.server_address[1], out

    yield _start

    for httpd in servers:
        httpd.shutdown()
        httpd.server_close()


@pytest.fixture
def wait_for_lines():
    """The access line is written after the response went out, so poll for it"""
    def _wait(out, count=1, timeout=5.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            lines = out.getvalue().splitlines()
            if len(lines) >= count:
                # give a stray extra line the chance to show up
                time.sleep(0.05)
                return out.getvalue().splitlines()
            time.sleep(0.01)
        return out.getvalue().splitlines()
    return _wait
