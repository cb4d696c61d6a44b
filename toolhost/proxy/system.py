"""Tool-aware system prompt for the agent loop."""

from __future__ import annotations

from typing import Any, Iterable

from .mcp.client import ToolDescriptor

SYSTEM_PROMPT_TEMPLATE = """\
You are an AI assistant with access to MCP (Model Context Protocol) tools.

Available MCP tools:
{tools}

CRITICAL OUTPUT FORMAT RULES:
1. To use a tool: Respond with ONLY a JSON object (no other text): {{"tool_call": {{"name": "tool_name", "arguments": {{...}}}}}}
2. To respond to user: Use normal text (no JSON)
3. NEVER mix JSON with other text - the JSON must be the ENTIRE response
4. After tool result is returned, you can then respond normally to the user

Example:
User: Search for Rust documentation
Assistant: {{"tool_call": {{"name": "search-docs", "arguments": {{"query": "Rust"}}}}}}

(Then after receiving tool result, you respond with actual answer)"""


def schema_type(param: Any) -> str:
    """Best-effort type label for one JSON-Schema property."""
    if not isinstance(param, dict):
        return "any"
    ptype = param.get("type")
    if isinstance(ptype, str):
        if ptype == "array" and isinstance(param.get("items"), dict):
            return f"array<{schema_type(param['items'])}>"
        return ptype
    if isinstance(ptype, list):
        labels = [t for t in ptype if isinstance(t, str)]
        if labels:
            return "|".join(labels)
    if "enum" in param:
        return "enum"
    for combinator in ("anyOf", "oneOf"):
        options = param.get(combinator)
        if isinstance(options, list) and options:
            return "|".join(schema_type(o) for o in options)
    return "any"


def format_tool_schema(schema: Any) -> str:
    """Render ``properties``/``required`` as one bullet per parameter."""
    props = schema.get("properties") if isinstance(schema, dict) else None
    if not isinstance(props, dict) or not props:
        return "No parameters defined."

    required = schema.get("required")
    required_list = [r for r in required if isinstance(r, str)] if isinstance(required, list) else []

    lines = []
    for param_name, param_def in props.items():
        description = param_def.get("description", "") if isinstance(param_def, dict) else ""
        req_marker = " (required)" if param_name in required_list else ""
        line = f"- `{param_name}: {schema_type(param_def)}`{req_marker}: {description}"
        if isinstance(param_def, dict) and isinstance(param_def.get("enum"), list):
            line += f" (one of: {', '.join(str(v) for v in param_def['enum'])})"
        lines.append(line)
    return "\n".join(lines)


def build_tools_prompt(tools: Iterable[ToolDescriptor]) -> str:
    blocks = [
        f"**{tool.name}**: {tool.description}\n\n{format_tool_schema(tool.input_schema)}"
        for tool in tools
    ]
    if not blocks:
        return "No tools available."
    return "\n\n".join(blocks)


def get_system_prompt(tools: Iterable[ToolDescriptor]) -> str:
    return SYSTEM_PROMPT_TEMPLATE.format(tools=build_tools_prompt(tools))
