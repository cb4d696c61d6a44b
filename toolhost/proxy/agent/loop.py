from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Sequence

from ..config import Config, ServerSpec, get_config
from ..errors import (
    DiscoveryTimeout,
    IterationExhausted,
    McpError,
    NoToolsAvailable,
    ToolExecutionError,
    TransportError,
)
from ..mcp import McpClient, ToolCatalog, discover_tools
from ..ollama import ChatCompleter
from ..system import get_system_prompt
from .intent import parse_tool_call
from .models import MAX_AGENT_ROUNDS, AgentStep, ParsedToolCall, StepChannel

logger = logging.getLogger("toolhost.agent")


def _preview(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class AgentLoop:
    """Ask the model, run the tool it names, feed the result back, repeat.

    Every invocation discovers tools afresh and closes its clients when
    it ends; nothing is shared between invocations.
    """

    def __init__(
        self,
        completer: ChatCompleter,
        max_rounds: int | None = None,
        discovery_timeout: float | None = None,
        tool_call_timeout: float | None = None,
        config: Config | None = None,
    ) -> None:
        cfg = config
        if cfg is None and None in (max_rounds, discovery_timeout, tool_call_timeout):
            cfg = get_config()
        self.completer = completer
        self.max_rounds = max_rounds if max_rounds is not None else (cfg.agent_max_rounds or MAX_AGENT_ROUNDS)
        self.discovery_timeout = discovery_timeout if discovery_timeout is not None else cfg.discovery_timeout
        self.tool_call_timeout = tool_call_timeout if tool_call_timeout is not None else cfg.tool_call_timeout
        self._background: set[asyncio.Task] = set()

    # ── Caller-facing API ─────────────────────────────────────────────

    async def run(
        self,
        messages: Sequence[dict[str, Any]],
        servers: Sequence[ServerSpec],
    ) -> AsyncIterator[AgentStep]:
        """Stream steps in production order.

        The stream ends after the ``final`` step, or raises the error that
        terminated the invocation. If the consumer stops early, the
        invocation still runs to completion and later steps are dropped.
        """
        channel = StepChannel()
        task = asyncio.ensure_future(self.chat(messages, servers, channel))
        task.add_done_callback(lambda _: channel.finish())
        try:
            while True:
                step = await channel.recv()
                if step is None:
                    break
                yield step
            await task
        finally:
            if not task.done():
                channel.close()
                self._background.add(task)
                task.add_done_callback(self._reap)
            elif not task.cancelled():
                task.exception()  # mark retrieved when the consumer left early

    async def chat(
        self,
        messages: Sequence[dict[str, Any]],
        servers: Sequence[ServerSpec],
        channel: StepChannel | None = None,
    ) -> str:
        """Run one invocation and return the final text."""
        channel = channel or StepChannel()
        messages = [dict(m) for m in messages]
        enabled = [s for s in servers if s.enabled]

        if not enabled:
            return await self._direct_answer(messages, channel)

        channel.send(AgentStep.connecting(f"Connecting to {len(enabled)} MCP server(s)..."))
        try:
            catalog = await self._load_catalog(enabled, channel)
        except DiscoveryTimeout as e:
            logger.warning(f"{e}; falling back to plain chat")
            channel.send(AgentStep.connecting("Connection timed out, switching to plain chat"))
            return await self._direct_answer(messages, channel)
        except NoToolsAvailable:
            logger.info("No tools loaded; falling back to plain chat")
            channel.send(AgentStep.connecting("No tools loaded, switching to plain chat"))
            return await self._direct_answer(messages, channel)

        try:
            return await self._tool_loop(messages, catalog, channel)
        finally:
            await asyncio.to_thread(catalog.close)

    # ── Internals ─────────────────────────────────────────────────────

    async def _load_catalog(self, servers: list[ServerSpec], channel: StepChannel) -> ToolCatalog:
        catalog = await discover_tools(servers, timeout=self.discovery_timeout)
        for report in catalog.reports:
            if report.ok:
                channel.send(AgentStep.connecting(f"{report.name}: loaded {report.tool_count} tools"))
        if catalog.is_empty:
            # servers that answered with zero tools are still running
            await asyncio.to_thread(catalog.close)
            raise NoToolsAvailable("no server contributed any tool")
        return catalog

    async def _direct_answer(self, messages: list[dict[str, Any]], channel: StepChannel) -> str:
        response = await self.completer.complete(messages)
        channel.send(AgentStep.final(response))
        return response

    async def _tool_loop(
        self,
        messages: list[dict[str, Any]],
        catalog: ToolCatalog,
        channel: StepChannel,
    ) -> str:
        transcript = [{"role": "system", "content": get_system_prompt(catalog.tools)}, *messages]
        logger.info(f"Agent started with {len(catalog)} tools from {len(catalog.clients)} server(s)")

        for round_no in range(1, self.max_rounds + 1):
            response = await self.completer.complete(transcript)
            logger.info(f"[ROUND {round_no}] Response ({len(response)} chars): {_preview(response)}")

            call = parse_tool_call(response)
            if call is None:
                channel.send(AgentStep.final(response))
                return response

            logger.info(f"[ROUND {round_no}] Tool call detected: {call.name}")
            channel.send(AgentStep.thinking(f"Thinking (round {round_no})...", response))
            channel.send(AgentStep.tool_call(call.name, call.arguments))

            try:
                result = await self._execute_tool_call(call, catalog)
                is_error = False
            except ToolExecutionError as e:
                if not catalog.live_clients():
                    raise
                # every client rejected the call; it only ends the invocation once no server is left alive
                # (see "Tool failure policy" in DESIGN.md), otherwise the error becomes the observation
                logger.warning(str(e))
                result = f"Error: {e}"
                is_error = True

            channel.send(AgentStep.tool_result(call.name, result, is_error=is_error))
            transcript.append({"role": "assistant", "content": response})
            transcript.append({"role": "user", "content": f"Tool result: {result}"})

        logger.warning("Maximum iterations reached")
        raise IterationExhausted(self.max_rounds)

    def _candidate_clients(self, call: ParsedToolCall, catalog: ToolCatalog) -> list[McpClient]:
        """Every live client, those that listed the tool first."""
        owners = catalog.owners_of(call.name)
        order = owners + [i for i in range(len(catalog.clients)) if i not in owners]
        return [catalog.clients[i] for i in order if catalog.clients[i].is_running]

    async def _execute_tool_call(self, call: ParsedToolCall, catalog: ToolCatalog) -> str:
        failures: list[str] = []
        for client in self._candidate_clients(call, catalog):
            try:
                result = await asyncio.wait_for(
                    asyncio.to_thread(client.call_tool, call.name, call.arguments),
                    timeout=self.tool_call_timeout,
                )
            except asyncio.TimeoutError:
                # the reply may still arrive later and would desync the pipe
                logger.warning(f"{client.name}: {call.name} timed out after {self.tool_call_timeout:.0f}s; stopping server")
                await asyncio.to_thread(client.close)
                failures.append(f"{client.name}: timed out")
                continue
            except TransportError as e:
                logger.warning(f"{client.name}: pipe failed during {call.name}; stopping server: {e}")
                await asyncio.to_thread(client.close)
                failures.append(f"{client.name}: {e}")
                continue
            except McpError as e:
                logger.debug(f"{client.name} rejected {call.name}: {e}")
                failures.append(f"{client.name}: {e}")
                continue
            return json.dumps(result, ensure_ascii=False)

        raise ToolExecutionError(call.name, failures)

    def _reap(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Detached agent invocation ended with error: {exc}")
