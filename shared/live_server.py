"""Run a WSGI app on a real socket for integration tests."""

from __future__ import annotations

import socket
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager

import requests
from flask import Flask
from werkzeug.serving import make_server


def wait_until_ready(url: str, timeout: float = 10, interval: float = 0.05) -> None:
    """Poll *url* until it answers at all, or raise after *timeout* seconds."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            requests.get(url, timeout=1)
            return
        except requests.RequestException:
            pass
        time.sleep(interval)
    raise RuntimeError(f"Server at {url} not ready after {timeout}s")


def unused_port(host: str = "127.0.0.1") -> int:
    """Return a port nothing is listening on (for connection-refused tests)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


@contextmanager
def live_server(app: Flask, host: str = "127.0.0.1") -> Generator[str, None, None]:
    """
    Serve *app* from a background thread and yield its base URL.

    The server binds an ephemeral port, so parallel test sessions never
    collide, and is shut down when the context exits.
    """
    server = make_server(host, 0, app, threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()

    base_url = f"http://{host}:{server.server_port}"
    try:
        wait_until_ready(base_url)
        yield base_url
    finally:
        server.shutdown()
        thread.join(timeout=5)
