"""Tests for the FastAPI proxy, with the Ollama client replaced by a mock."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from conftest import echo_spec


def write_config(servers):
    path = Path.home() / ".toolhost" / "config.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"mcp_servers": [s.to_dict() for s in servers]}))


@pytest.fixture
def ollama():
    client = MagicMock()
    client.health_check = AsyncMock(return_value=True)
    client.complete = AsyncMock(return_value="hi there")
    client.unload_model = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def make_api(ollama):
    """Start the app with the given servers configured."""
    stack = []

    def _make(servers=()):
        write_config(list(servers))
        patcher = patch("toolhost.proxy.server.OllamaClient", return_value=ollama)
        patcher.start()
        from toolhost.proxy.server import app
        client = TestClient(app)
        client.__enter__()
        stack.append((patcher, client))
        return client

    yield _make
    for patcher, client in reversed(stack):
        client.__exit__(None, None, None)
        patcher.stop()


class TestStatusEndpoints:

    def test_status(self, make_api):
        api = make_api([echo_spec("a"), echo_spec("b", enabled=False)])
        data = api.get("/api/status").json()
        assert data["status"] == "ok"
        assert data["ollama"]["connected"] is True
        assert data["mcp"] == {"configured": 2, "enabled": 1}

    def test_status_degraded(self, make_api, ollama):
        ollama.health_check.return_value = False
        data = make_api().get("/api/status").json()
        assert data["status"] == "degraded"

    def test_servers_hide_env(self, make_api):
        spec = echo_spec("a")
        api = make_api([spec])
        data = api.get("/api/servers").json()
        assert data["count"] == 1
        assert data["servers"][0] == {
            "name": "a", "command": spec.command, "args": list(spec.args), "enabled": True,
        }

    def test_tools_without_servers(self, make_api):
        data = make_api().get("/api/tools").json()
        assert data["count"] == 0
        assert data["tools"] == []

    def test_tools_fresh_discovery(self, make_api):
        data = make_api([echo_spec("a")]).get("/api/tools").json()
        assert data["count"] == 3
        assert {t["name"] for t in data["tools"]} == {"echo", "received", "fail"}
        assert data["servers"][0]["name"] == "a"

    def test_unload(self, make_api, ollama):
        resp = make_api().post("/api/unload")
        assert resp.json()["status"] == "ok"
        ollama.unload_model.assert_awaited()


class TestChatEndpoint:

    def test_direct_chat_collected(self, make_api):
        resp = make_api().post("/api/chat", json={
            "messages": [{"role": "user", "content": "hello"}],
            "stream": False,
        })
        assert resp.status_code == 200
        assert resp.json()["events"] == [{"type": "final", "text": "hi there"}]

    def test_message_shortcut(self, make_api, ollama):
        make_api().post("/api/chat", json={"message": "hello", "stream": False})
        sent = ollama.complete.await_args.args[0]
        assert sent == [{"role": "user", "content": "hello"}]

    def test_empty_request_rejected(self, make_api):
        resp = make_api().post("/api/chat", json={"messages": [], "stream": False})
        assert resp.status_code == 400

    def test_tool_round_collected(self, make_api, ollama):
        ollama.complete.side_effect = [
            json.dumps({"tool_call": {"name": "echo", "arguments": {"message": "yo"}}}),
            "echoed",
        ]
        resp = make_api([echo_spec("a")]).post("/api/chat", json={
            "messages": [{"role": "user", "content": "echo yo"}],
            "stream": False,
        })
        events = resp.json()["events"]
        assert [e["type"] for e in events] == [
            "connecting", "connecting", "thinking", "tool_call", "tool_result", "final",
        ]
        assert events[-1]["text"] == "echoed"

    def test_model_failure_becomes_error_event(self, make_api, ollama):
        ollama.complete.side_effect = ConnectionError("connection refused")
        resp = make_api().post("/api/chat", json={"message": "hello", "stream": False})
        events = resp.json()["events"]
        assert events[-1]["type"] == "error"
        assert "Cannot connect to Ollama" in events[-1]["message"]

    def test_streaming_events(self, make_api):
        resp = make_api().post("/api/chat", json={"message": "hello", "stream": True})
        assert resp.status_code == 200
        assert "text/event-stream" in resp.headers["content-type"]
        assert "event: final" in resp.text
        assert "hi there" in resp.text
