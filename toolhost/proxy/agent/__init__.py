"""Agent package.

    models.py  — ParsedToolCall, AgentStep, StepChannel
    intent.py  — parse_tool_call(): find the tool-call envelope in model text
    loop.py    — AgentLoop: discovery, reasoning rounds, tool execution
"""

from .intent import parse_tool_call
from .loop import AgentLoop
from .models import MAX_AGENT_ROUNDS, AgentStep, ParsedToolCall, StepChannel

__all__ = [
    "MAX_AGENT_ROUNDS",
    "AgentLoop",
    "AgentStep",
    "ParsedToolCall",
    "StepChannel",
    "parse_tool_call",
]
