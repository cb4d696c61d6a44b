"""Exception hierarchy for the tool host.

McpError and its subclasses come from a single helper process.
The remaining errors belong to discovery and the agent loop.
"""

from __future__ import annotations

from typing import Any


class ToolhostError(Exception):
    """Base class for every error raised by the tool host."""


# ── Protocol client ──────────────────────────────────────────────────

class McpError(ToolhostError):
    """A helper process could not complete a protocol operation."""


class SpawnError(McpError):
    """The helper executable could not be launched."""


class TransportError(McpError):
    """Pipe I/O with the helper failed (broken pipe, EOF, partial line)."""


class ProtocolError(McpError):
    """The helper answered with a JSON-RPC ``error`` object."""

    def __init__(self, message: str, code: int | None = None, data: Any = None) -> None:
        super().__init__(f"MCP error {code}: {message}" if code is not None else f"MCP error: {message}")
        self.code = code
        self.message = message
        self.data = data


class DecodeError(McpError):
    """The helper's reply was not valid JSON or had the wrong shape."""


# ── Discovery ────────────────────────────────────────────────────────

class DiscoveryTimeout(ToolhostError):
    """Discovery did not finish within its time budget."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Tool discovery timed out after {timeout:.0f}s")
        self.timeout = timeout


class NoToolsAvailable(ToolhostError):
    """Discovery finished but no server contributed any tool."""


# ── Agent loop ───────────────────────────────────────────────────────

class ToolExecutionError(ToolhostError):
    """No connected client accepted the requested tool call."""

    def __init__(self, tool_name: str, failures: list[str] | None = None) -> None:
        self.tool_name = tool_name
        self.failures = failures or []
        detail = "; ".join(self.failures) if self.failures else "no connected server"
        super().__init__(f"Tool '{tool_name}' could not be executed: {detail}")


class IterationExhausted(ToolhostError):
    """The model kept calling tools past the round bound."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"Maximum iterations reached ({max_rounds} rounds)")
        self.max_rounds = max_rounds
