"""Detect a tool-call envelope inside free model text.

The envelope is ``{"tool_call": {"name": ..., "arguments": ...}}``. Models
wrap it in code fences or prose often enough that a plain ``json.loads``
is not sufficient, so several strategies are tried in order.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .models import ParsedToolCall

logger = logging.getLogger("toolhost.agent.intent")

ENVELOPE_KEY = "tool_call"

_ENVELOPE_OPEN_RE = re.compile(r'\{\s*"tool_call"\s*:')
_ENVELOPE_KEY_RE = re.compile(r'"tool_call"\s*:')


def strip_code_fence(text: str) -> str:
    """Remove a ```/```json fence around the whole response."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.split("\n")
    end = len(lines)
    for i in range(len(lines) - 1, 0, -1):
        if lines[i].strip() == "```":
            end = i
            break
    return "\n".join(lines[1:end]).strip()


def find_balanced_object(text: str, start: int) -> str | None:
    """Return the ``{...}`` beginning at ``start`` with braces balanced.

    Braces inside JSON strings do not count; a backslash escapes the
    next character inside a string.
    """
    if start >= len(text) or text[start] != "{":
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def decode_envelope_value(value: Any) -> ParsedToolCall | None:
    """Turn the value under ``tool_call`` into a ParsedToolCall."""
    if not isinstance(value, dict):
        return None
    name = value.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    arguments = value.get("arguments", {})
    if arguments is None:
        arguments = {}
    return ParsedToolCall(name=name.strip(), arguments=arguments)


def _loads(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _from_whole_text(cleaned: str) -> ParsedToolCall | None:
    parsed = _loads(cleaned)
    if isinstance(parsed, dict) and ENVELOPE_KEY in parsed:
        return decode_envelope_value(parsed[ENVELOPE_KEY])
    return None


def _from_embedded_envelope(cleaned: str) -> ParsedToolCall | None:
    for match in _ENVELOPE_OPEN_RE.finditer(cleaned):
        candidate = find_balanced_object(cleaned, match.start())
        if candidate is None:
            continue
        parsed = _loads(candidate)
        if isinstance(parsed, dict) and ENVELOPE_KEY in parsed:
            call = decode_envelope_value(parsed[ENVELOPE_KEY])
            if call:
                return call
    return None


def _from_envelope_key(cleaned: str) -> ParsedToolCall | None:
    for match in _ENVELOPE_KEY_RE.finditer(cleaned):
        brace = cleaned.find("{", match.end())
        if brace == -1:
            return None
        candidate = find_balanced_object(cleaned, brace)
        if candidate is None:
            continue
        call = decode_envelope_value(_loads(candidate))
        if call:
            return call
    return None


def parse_tool_call(response: str) -> ParsedToolCall | None:
    """Extract a tool call from a model response.

    Returns None when the response should be treated as the final
    natural-language answer.
    """
    if not response or ENVELOPE_KEY not in response:
        return None

    cleaned = strip_code_fence(response)

    for strategy in (_from_whole_text, _from_embedded_envelope, _from_envelope_key):
        call = strategy(cleaned)
        if call is not None:
            logger.debug(f"Tool call found by {strategy.__name__}: {call.name}")
            return call

    logger.debug("No tool_call found in response")
    return None
