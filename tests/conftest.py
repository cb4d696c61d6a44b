"""Shared fixtures: a real MCP helper process spawned with this interpreter."""

import sys
from pathlib import Path

import pytest

from toolhost.proxy.config import ServerSpec, reset_config
from toolhost.proxy.mcp import McpClient

ECHO_SERVER = str(Path(__file__).parent / "helpers" / "echo_server.py")


def echo_spec(name: str = "echo", *flags: str, enabled: bool = True) -> ServerSpec:
    return ServerSpec(
        name=name,
        command=sys.executable,
        args=(ECHO_SERVER, *flags),
        enabled=enabled,
    )


@pytest.fixture
def make_client():
    """Factory for connected clients; all of them are closed after the test."""
    clients = []

    def _make(*flags: str, name: str = "echo") -> McpClient:
        client = McpClient.connect(sys.executable, [ECHO_SERVER, *flags], name=name)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Never read the developer's real ~/.toolhost/config.json."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("USERPROFILE", str(tmp_path))
    reset_config()
    yield
    reset_config()
