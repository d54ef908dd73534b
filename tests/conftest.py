"""Shared fixtures: live echo servers on ephemeral ports."""

from __future__ import annotations

import http.client
import json
from dataclasses import replace

import pytest

from echoserver.models import ServerConfig
from echoserver.server import ServerLifecycle


@pytest.fixture
def start_server():
    """Factory starting a server on 127.0.0.1 with config overrides."""
    started: list[ServerLifecycle] = []

    def _start(**overrides) -> ServerLifecycle:
        config = replace(
            ServerConfig(bind_address="127.0.0.1", port=0, shutdown_timeout=2.0), **overrides
        )
        lifecycle = ServerLifecycle(config)
        lifecycle.start()
        started.append(lifecycle)
        return lifecycle

    yield _start

    for lifecycle in started:
        lifecycle.shutdown()


@pytest.fixture
def echo_server(start_server):
    return start_server()


@pytest.fixture
def send():
    """Return a helper sending one request to a started server."""
    return _send


def _send(lifecycle, method, path, body=None, headers=None):
    """Send one request and return ``(status, response, decoded JSON)``."""
    host, port = lifecycle.server_address
    conn = http.client.HTTPConnection(host, port, timeout=5)
    try:
        conn.request(method, path, body=body, headers=headers or {})
        resp = conn.getresponse()
        raw = resp.read()
        payload = json.loads(raw) if raw else None
        return resp.status, resp, payload
    finally:
        conn.close()
