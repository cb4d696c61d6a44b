"""Tests for AgentLoop driven by a scripted completer and real helper processes."""

import asyncio
import json
import sys
import threading
import time

import pytest

from conftest import ECHO_SERVER, echo_spec
from toolhost.proxy.agent import AgentLoop, AgentStep
from toolhost.proxy.config import ServerSpec
from toolhost.proxy.errors import IterationExhausted, ToolExecutionError


def envelope(name, arguments=None):
    return json.dumps({"tool_call": {"name": name, "arguments": arguments or {}}})


class ScriptedCompleter:
    """Returns canned responses in order and records every transcript it saw."""

    def __init__(self, *responses, repeat_last=False):
        self.responses = list(responses)
        self.repeat_last = repeat_last
        self.transcripts = []

    async def complete(self, messages):
        self.transcripts.append([dict(m) for m in messages])
        if len(self.responses) > 1 or not self.repeat_last:
            return self.responses.pop(0)
        return self.responses[0]


class FailingCompleter:
    async def complete(self, messages):
        raise ConnectionError("connection refused")


def make_loop(completer, **kwargs):
    kwargs.setdefault("max_rounds", 10)
    kwargs.setdefault("discovery_timeout", 30)
    kwargs.setdefault("tool_call_timeout", 30)
    return AgentLoop(completer, **kwargs)


def collect(loop, messages, servers):
    """Run the loop to completion; returns (steps, exception or None)."""
    steps: list[AgentStep] = []

    async def run():
        try:
            async for step in loop.run(messages, servers):
                steps.append(step)
        except Exception as e:
            return e
        return None

    error = asyncio.run(run())
    return steps, error


USER = [{"role": "user", "content": "say hi through the echo tool"}]


# ═══════════════════════════════════════════════════════════════
# Direct chat
# ═══════════════════════════════════════════════════════════════

class TestDirectChat:

    def test_no_servers_single_final_step(self):
        completer = ScriptedCompleter("hello")
        steps, error = collect(make_loop(completer), [{"role": "user", "content": "hi"}], [])
        assert error is None
        assert [s.type for s in steps] == ["final"]
        assert steps[0].data["text"] == "hello"
        assert completer.transcripts == [[{"role": "user", "content": "hi"}]]

    def test_disabled_servers_are_ignored(self):
        completer = ScriptedCompleter("hello")
        servers = [echo_spec("off", enabled=False)]
        steps, error = collect(make_loop(completer), USER, servers)
        assert error is None
        assert [s.type for s in steps] == ["final"]

    def test_chat_returns_final_text(self):
        loop = make_loop(ScriptedCompleter("plain answer"))
        assert asyncio.run(loop.chat(USER, [])) == "plain answer"

    def test_completion_error_propagates(self):
        steps, error = collect(make_loop(FailingCompleter()), USER, [])
        assert isinstance(error, ConnectionError)
        assert steps == []


# ═══════════════════════════════════════════════════════════════
# Tool rounds
# ═══════════════════════════════════════════════════════════════

class TestToolRounds:

    def test_echo_round_trip(self):
        completer = ScriptedCompleter(envelope("echo", {"message": "hi"}), "The tool said hi.")
        steps, error = collect(make_loop(completer), USER, [echo_spec()])
        assert error is None
        assert [s.type for s in steps] == [
            "connecting", "connecting", "thinking", "tool_call", "tool_result", "final",
        ]
        assert steps[0].data["message"] == "Connecting to 1 MCP server(s)..."
        assert steps[1].data["message"] == "echo: loaded 3 tools"
        assert steps[2].data["short"] == "Thinking (round 1)..."
        assert steps[3].data == {"name": "echo", "args": {"message": "hi"}}
        result = steps[4].data
        assert result["is_error"] is False
        assert json.loads(result["result"]) == {"content": [{"type": "text", "text": "hi"}]}
        assert steps[5].data["text"] == "The tool said hi."

    def test_transcript_carries_system_prompt_and_observation(self):
        completer = ScriptedCompleter(envelope("echo", {"message": "hi"}), "done")
        collect(make_loop(completer), USER, [echo_spec()])
        first, second = completer.transcripts
        assert first[0]["role"] == "system"
        assert "**echo**: Echo back the message" in first[0]["content"]
        assert first[1:] == USER
        assert second[-2] == {"role": "assistant", "content": envelope("echo", {"message": "hi"})}
        assert second[-1]["role"] == "user"
        assert second[-1]["content"].startswith("Tool result: ")
        payload = json.loads(second[-1]["content"][len("Tool result: "):])
        assert payload["content"][0]["text"] == "hi"

    def test_iteration_exhausted_after_max_rounds(self):
        completer = ScriptedCompleter(envelope("echo", {"message": "again"}), repeat_last=True)
        steps, error = collect(make_loop(completer), USER, [echo_spec()])
        assert isinstance(error, IterationExhausted)
        assert error.max_rounds == 10
        assert sum(1 for s in steps if s.type == "tool_call") == 10
        assert not any(s.type == "final" for s in steps)

    def test_custom_round_bound(self):
        completer = ScriptedCompleter(envelope("echo", {"message": "x"}), repeat_last=True)
        steps, error = collect(make_loop(completer, max_rounds=2), USER, [echo_spec()])
        assert isinstance(error, IterationExhausted)
        assert [s.data["short"] for s in steps if s.type == "thinking"] == [
            "Thinking (round 1)...", "Thinking (round 2)...",
        ]

    def test_tool_served_by_second_server(self):
        completer = ScriptedCompleter(envelope("echo", {"message": "hi"}), "ok")
        servers = [echo_spec("a", "--no-tools"), echo_spec("b", "--prefix", "b:")]
        steps, error = collect(make_loop(completer), USER, servers)
        assert error is None
        result = next(s for s in steps if s.type == "tool_result")
        assert json.loads(result.data["result"])["content"][0]["text"] == "b:hi"


# ═══════════════════════════════════════════════════════════════
# Degradation
# ═══════════════════════════════════════════════════════════════

class TestDegradation:

    def test_all_servers_failing_falls_back(self):
        completer = ScriptedCompleter("no tools needed")
        servers = [ServerSpec(name="gone", command="toolhost-no-such-binary-xyz")]
        steps, error = collect(make_loop(completer), USER, servers)
        assert error is None
        assert [s.type for s in steps] == ["connecting", "connecting", "final"]
        assert "No tools loaded" in steps[1].data["message"]
        assert completer.transcripts == [USER]

    def test_servers_without_tools_fall_back(self):
        completer = ScriptedCompleter("plain")
        steps, error = collect(make_loop(completer), USER, [echo_spec("empty", "--no-tools")])
        assert error is None
        assert steps[-1].data["text"] == "plain"
        assert completer.transcripts[0][0]["role"] == "user"

    def test_discovery_timeout_falls_back(self):
        completer = ScriptedCompleter("late but fine")
        loop = make_loop(completer, discovery_timeout=0.5)
        steps, error = collect(loop, USER, [echo_spec("slow", "--delay-list", "5")])
        assert error is None
        assert "timed out" in steps[1].data["message"]
        assert steps[-1].type == "final"


# ═══════════════════════════════════════════════════════════════
# Tool failures
# ═══════════════════════════════════════════════════════════════

class TestToolFailures:

    def test_remote_error_is_observed_and_loop_continues(self):
        completer = ScriptedCompleter(envelope("fail"), "recovered")
        steps, error = collect(make_loop(completer), USER, [echo_spec()])
        assert error is None
        result = next(s for s in steps if s.type == "tool_result")
        assert result.data["is_error"] is True
        assert "tool failed on purpose" in result.data["result"]
        assert completer.transcripts[1][-1]["content"].startswith("Tool result: Error:")
        assert steps[-1].data["text"] == "recovered"

    def test_unknown_tool_is_observed(self):
        completer = ScriptedCompleter(envelope("nonexistent"), "sorry")
        steps, error = collect(make_loop(completer), USER, [echo_spec("a"), echo_spec("b")])
        assert error is None
        result = next(s for s in steps if s.type == "tool_result")
        assert result.data["is_error"] is True
        assert "a:" in result.data["result"] and "b:" in result.data["result"]

    def test_dead_server_terminates_invocation(self):
        completer = ScriptedCompleter(envelope("echo", {"message": "hi"}), "unreachable")
        servers = [echo_spec("dies", "--exit-on", "tools/call")]
        steps, error = collect(make_loop(completer), USER, servers)
        assert isinstance(error, ToolExecutionError)
        assert error.tool_name == "echo"
        assert [s.type for s in steps][-1] == "tool_call"
        assert len(completer.transcripts) == 1

    def test_call_deadline_stops_server(self):
        completer = ScriptedCompleter(envelope("echo", {"message": "hi"}), "unreachable")
        loop = make_loop(completer, tool_call_timeout=0.5)
        steps, error = collect(loop, USER, [echo_spec("hangs", "--hang-on", "tools/call")])
        assert isinstance(error, ToolExecutionError)
        assert "timed out" in str(error)

    @pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
    def test_call_deadline_stops_server_behind_launcher(self):
        # the shell stays alive as the parent of the real server, like npx does
        command = f"'{sys.executable}' '{ECHO_SERVER}' --hang-on tools/call; true"
        servers = [ServerSpec(name="wrapped", command="sh", args=("-c", command))]
        completer = ScriptedCompleter(envelope("echo", {"message": "hi"}), "unreachable")
        loop = make_loop(completer, tool_call_timeout=1)
        outcome = {}

        def invoke():
            outcome["steps"], outcome["error"] = collect(loop, USER, servers)

        started = time.perf_counter()
        worker = threading.Thread(target=invoke, daemon=True)
        worker.start()
        worker.join(timeout=20)
        assert not worker.is_alive(), "invocation still blocked after the tool-call deadline"
        assert time.perf_counter() - started < 15
        assert isinstance(outcome["error"], ToolExecutionError)
        assert "timed out" in str(outcome["error"])
