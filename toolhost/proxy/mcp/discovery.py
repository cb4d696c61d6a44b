"""Tool discovery across every enabled MCP server.

Each server is connected, initialized and listed on its own worker thread,
since the pipe I/O blocks. The aggregate is handed back to the event loop
through a one-shot future, and the caller waits on it with a deadline.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from ..config import ServerSpec
from ..errors import DiscoveryTimeout, McpError
from .client import McpClient, ToolDescriptor

logger = logging.getLogger("toolhost.discovery")


@dataclass
class ServerReport:
    """Outcome of discovery for one server."""

    name: str
    tool_count: int = 0
    error: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class CatalogEntry:
    client_index: int
    server: str
    tool: ToolDescriptor


@dataclass
class ToolCatalog:
    """Tools found during one agent invocation, plus the live clients behind them.

    ``client_index`` records which client listed a tool. It is provenance
    for prompt building and ordering only: tool names are not unique
    across servers, so execution still tries clients in turn.
    """

    entries: list[CatalogEntry] = field(default_factory=list)
    clients: list[McpClient] = field(default_factory=list)
    reports: list[ServerReport] = field(default_factory=list)

    @property
    def tools(self) -> list[ToolDescriptor]:
        return [e.tool for e in self.entries]

    @property
    def is_empty(self) -> bool:
        return not self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self.entries)

    def owners_of(self, tool_name: str) -> list[int]:
        return [e.client_index for e in self.entries if e.tool.name == tool_name]

    def duplicate_names(self) -> set[str]:
        seen: set[str] = set()
        dupes: set[str] = set()
        for entry in self.entries:
            if entry.tool.name in seen:
                dupes.add(entry.tool.name)
            seen.add(entry.tool.name)
        return dupes

    def live_clients(self) -> list[McpClient]:
        return [c for c in self.clients if c.is_running]

    def close(self) -> None:
        for client in self.clients:
            client.close()

    def to_dict(self) -> dict:
        return {
            "count": len(self.entries),
            "tools": [
                {
                    "server": e.server,
                    "name": e.tool.name,
                    "description": e.tool.description,
                    "inputSchema": e.tool.input_schema,
                }
                for e in self.entries
            ],
            "servers": [
                {"name": r.name, "tools": r.tool_count, "error": r.error, "duration": round(r.duration, 2)}
                for r in self.reports
            ],
        }


@dataclass
class _WorkerResult:
    report: ServerReport
    client: McpClient | None = None
    tools: list[ToolDescriptor] = field(default_factory=list)


def _discover_one(spec: ServerSpec) -> _WorkerResult:
    """connect + initialize + tools/list for one server; never raises McpError."""
    t0 = time.perf_counter()
    client: McpClient | None = None
    logger.info(f"Connecting to {spec.name}...")
    try:
        client = McpClient.connect(spec.command, spec.args, spec.env, name=spec.name)
        tools = client.list_tools()
    except McpError as e:
        if client is not None:
            client.close()
        logger.warning(f"Failed to load tools from {spec.name}: {e}")
        return _WorkerResult(report=ServerReport(spec.name, error=str(e), duration=time.perf_counter() - t0))

    logger.info(f"{spec.name} loaded {len(tools)} tools")
    return _WorkerResult(
        report=ServerReport(spec.name, tool_count=len(tools), duration=time.perf_counter() - t0),
        client=client,
        tools=tools,
    )


def _build_catalog(results: Iterable[_WorkerResult]) -> ToolCatalog:
    catalog = ToolCatalog()
    for res in results:
        catalog.reports.append(res.report)
        if res.client is None:
            continue
        index = len(catalog.clients)
        catalog.clients.append(res.client)
        for tool in res.tools:
            catalog.entries.append(CatalogEntry(index, res.report.name, tool))

    dupes = catalog.duplicate_names()
    if dupes:
        logger.warning(f"Tool names offered by more than one server: {sorted(dupes)}")
    return catalog


def _close_results(results: Iterable[_WorkerResult]) -> None:
    for res in results:
        if res.client is not None:
            res.client.close()


class _DiscoveryJob:
    """Runs one worker thread per server and resolves a future once all report."""

    def __init__(self, servers: list[ServerSpec], loop: asyncio.AbstractEventLoop) -> None:
        self.servers = servers
        self.loop = loop
        self.future: asyncio.Future[list[_WorkerResult]] = loop.create_future()
        self._results: list[_WorkerResult | None] = [None] * len(servers)

    def start(self) -> None:
        threading.Thread(target=self._run, name="mcp-discovery", daemon=True).start()

    def _run(self) -> None:
        workers = [
            threading.Thread(target=self._work, args=(i, spec), name=f"mcp-connect-{spec.name}", daemon=True)
            for i, spec in enumerate(self.servers)
        ]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        results = [r for r in self._results if r is not None]
        try:
            self.loop.call_soon_threadsafe(self._resolve, results)
        except RuntimeError:
            # event loop already gone: nobody will ever use these clients
            _close_results(results)

    def _work(self, index: int, spec: ServerSpec) -> None:
        try:
            self._results[index] = _discover_one(spec)
        except Exception as e:
            logger.exception(f"Unexpected error while discovering {spec.name}")
            self._results[index] = _WorkerResult(report=ServerReport(spec.name, error=str(e)))

    def _resolve(self, results: list[_WorkerResult]) -> None:
        if self.future.done():
            logger.info("Discovery finished after it was abandoned; stopping late servers")
            _close_results(results)
            return
        self.future.set_result(results)


async def discover_tools(servers: list[ServerSpec], timeout: float = 90.0) -> ToolCatalog:
    """Connect to every server concurrently and aggregate their tools.

    Failed servers are dropped and reported, never fatal. Raises
    ``DiscoveryTimeout`` if the whole step exceeds ``timeout`` seconds;
    clients that finish later are closed.
    """
    if not servers:
        return ToolCatalog()

    job = _DiscoveryJob(list(servers), asyncio.get_running_loop())
    job.start()
    try:
        results = await asyncio.wait_for(job.future, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Discovery abandoned after {timeout:.0f}s")
        raise DiscoveryTimeout(timeout) from None

    return _build_catalog(results)
