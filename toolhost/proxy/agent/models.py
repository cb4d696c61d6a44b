from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

MAX_AGENT_ROUNDS = 10


@dataclass(frozen=True)
class ParsedToolCall:
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass
class AgentStep:
    type: str  # "connecting", "thinking", "tool_call", "tool_result", "final"
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def connecting(cls, message: str) -> AgentStep:
        return cls(type="connecting", data={"message": message})

    @classmethod
    def thinking(cls, short: str, content: str | None = None) -> AgentStep:
        return cls(type="thinking", data={"short": short, "content": content})

    @classmethod
    def tool_call(cls, name: str, args: Any) -> AgentStep:
        return cls(type="tool_call", data={"name": name, "args": args})

    @classmethod
    def tool_result(cls, name: str, result: str, is_error: bool = False) -> AgentStep:
        return cls(type="tool_result", data={"name": name, "result": result, "is_error": is_error})

    @classmethod
    def final(cls, text: str) -> AgentStep:
        return cls(type="final", data={"text": text})

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data}


class StepChannel:
    """Unbounded progress channel between the loop and its caller.

    ``send`` never blocks. Once the receiving side is closed, further
    steps are dropped silently.
    """

    _EOF = object()

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, step: AgentStep) -> None:
        if self._closed:
            self.dropped += 1
            return
        self._queue.put_nowait(step)

    def finish(self) -> None:
        """Mark the end of the stream for the receiver."""
        if not self._closed:
            self._queue.put_nowait(self._EOF)

    def close(self) -> None:
        """Receiver is gone; discard anything still queued."""
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()

    async def recv(self) -> AgentStep | None:
        item = await self._queue.get()
        if item is self._EOF:
            return None
        return item
