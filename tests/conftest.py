import os
import sys
import threading

import pytest

# Allow running pytest from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def ensure_crlf(string_or_bytes, trailing=None):
    r"""
    >>> ensure_crlf('\nfoo\nbar\nbaz\n\n')
    'foo\r\nbar\r\nbaz\r\n\r\n'

    >>> ensure_crlf('\nfoo\nbar\nbaz\n\nspam\n')
    'foo\r\nbar\r\nbaz\r\n\r\nspam'
    """
    is_bytes = isinstance(string_or_bytes, bytes)
    if trailing is None:
        trailing = string_or_bytes.endswith(b"\n\n" if is_bytes else "\n\n")
    lines = string_or_bytes.strip().splitlines()
    sp = b"\r\n" if is_bytes else "\r\n"
    if trailing:
        lines.append(sp)
    return sp.join(lines)


def basic(username, password):
    """Return an Authorization field value"""
    import base64
    raw = "{}:{}".format(username, password).encode()
    return "Basic " + base64.b64encode(raw).decode()


@pytest.fixture
def run_server():
    """Start servers in background threads, stop them at teardown

    Call with a server instance; returns its port.
    """
    started = []

    def _run(server):
        thread = threading.Thread(target=server.serve_forever)
        thread.daemon = True
        thread.start()
        started.append((server, thread))
        return server.server_address[1]

    yield _run

    for server, thread in started:
        server.shutdown()
        server.server_close()
        thread.join(5)


def fetch(port, method="GET", path="/", headers=None, body=None):
    """Return status, headers (case-insensitive), body"""
    from http.client import HTTPConnection
    conn = HTTPConnection("127.0.0.1", port, timeout=10)
    try:
        conn.request(method, path, body=body, headers=headers or {})
        resp = conn.getresponse()
        return resp.status, resp.msg, resp.read()
    finally:
        conn.close()


def exchange(port, *parts, **kwargs):
    """Send raw request bytes, return everything read until EOF

    With more than one part, each one after the first is sent only once a
    reply has started arriving. Use ``wait`` (seconds) to bound that.
    """
    import socket
    wait = kwargs.get("wait", 10)
    received = []
    with socket.create_connection(("127.0.0.1", port), timeout=wait) as sock:
        sock.sendall(parts[0])
        for part in parts[1:]:
            received.append(sock.recv(65536))
            sock.sendall(part)
        while True:
            data = sock.recv(65536)
            if not data:
                break
            received.append(data)
    return b"".join(received)
