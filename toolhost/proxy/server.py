"""FastAPI proxy server: streams agent steps to HTTP clients over SSE."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Literal

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from .agent import AgentLoop
from .config import get_config
from .errors import DiscoveryTimeout, ToolhostError
from .mcp import discover_tools
from .ollama import OllamaClient, describe_error

logger = logging.getLogger("toolhost.server")

# Global instances
ollama_client: OllamaClient | None = None
agent: AgentLoop | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    global ollama_client, agent

    cfg = get_config()
    logger.info(f"Starting toolhost proxy on {cfg.proxy_host}:{cfg.proxy_port}")
    logger.info(f"  Ollama: {cfg.ollama_url} (model: {cfg.ollama_model})")
    logger.info(f"  MCP servers: {len(cfg.enabled_servers())} enabled of {len(cfg.mcp_servers)} configured")

    ollama_client = OllamaClient()
    agent = AgentLoop(ollama_client, config=cfg)

    ollama_ok = await ollama_client.health_check()
    logger.info(f"  Ollama status: {'✓ connected' if ollama_ok else '✗ unavailable'}")

    yield

    if ollama_client:
        await ollama_client.close()
    logger.info("toolhost proxy shutdown complete")


app = FastAPI(
    title="toolhost proxy",
    version="0.1.0",
    description="Ollama + MCP tool bridge",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Request Models ──────────────────────────────────────────────────

class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    message: str | None = None
    stream: bool = True

    def transcript(self) -> list[dict[str, Any]]:
        messages = [m.model_dump() for m in self.messages]
        if self.message:
            messages.append({"role": "user", "content": self.message})
        return messages


# ─── Routes ──────────────────────────────────────────────────────────

@app.get("/api/status")
async def get_status() -> JSONResponse:
    """Health check and connection status."""
    ollama_ok = await ollama_client.health_check() if ollama_client else False
    cfg = get_config()

    return JSONResponse({
        "status": "ok" if ollama_ok else "degraded",
        "ollama": {
            "connected": ollama_ok,
            "url": cfg.ollama_url,
            "model": cfg.ollama_model,
        },
        "mcp": {
            "configured": len(cfg.mcp_servers),
            "enabled": len(cfg.enabled_servers()),
        },
    })


@app.get("/api/servers")
async def list_servers() -> JSONResponse:
    """Configured MCP servers; env values are not exposed."""
    servers = [
        {"name": s.name, "command": s.command, "args": list(s.args), "enabled": s.enabled}
        for s in get_config().mcp_servers
    ]
    return JSONResponse({"count": len(servers), "servers": servers})


@app.get("/api/tools")
async def list_tools() -> JSONResponse:
    """Run a fresh discovery and report what each server offers."""
    cfg = get_config()
    try:
        catalog = await discover_tools(cfg.enabled_servers(), timeout=cfg.discovery_timeout)
    except DiscoveryTimeout as e:
        return JSONResponse({"count": 0, "tools": [], "servers": [], "error": str(e)}, status_code=504)
    try:
        return JSONResponse(catalog.to_dict())
    finally:
        catalog.close()


@app.post("/api/chat", response_model=None)
async def chat(request: ChatRequest) -> EventSourceResponse | JSONResponse:
    """Run one agent invocation; stream steps or return them all at once."""
    if not agent:
        return JSONResponse({"error": "Agent not initialized"}, status_code=503)

    messages = request.transcript()
    if not messages:
        return JSONResponse({"error": "No messages given"}, status_code=400)

    if request.stream:
        return EventSourceResponse(
            _stream_agent_steps(messages),
            media_type="text/event-stream",
        )

    events = [event async for event in _collect_agent_steps(messages)]
    return JSONResponse({"events": events})


async def _collect_agent_steps(messages: list[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
    """Agent steps as plain dicts, ending with ``final`` or ``error``."""
    servers = get_config().enabled_servers()
    try:
        async for step in agent.run(messages, servers):
            yield step.to_dict()
    except ToolhostError as e:
        logger.error(f"Agent invocation failed: {e}")
        yield {"type": "error", "message": describe_error(e)}
    except Exception as e:
        logger.exception("Chat completion failed")
        yield {"type": "error", "message": describe_error(e)}


async def _stream_agent_steps(messages: list[dict[str, Any]]) -> AsyncIterator[dict]:
    """Stream agent steps as SSE."""
    async for event in _collect_agent_steps(messages):
        yield {
            "event": event["type"],
            "data": json.dumps(event, default=str),
        }


@app.post("/api/unload")
async def unload_model_endpoint() -> JSONResponse:
    """Unload the Ollama model (release VRAM)."""
    if ollama_client:
        await ollama_client.unload_model()
        return JSONResponse({"status": "ok", "message": "Model unloaded"})
    return JSONResponse({"status": "error", "message": "Ollama client not initialized"}, status_code=503)


def create_app() -> FastAPI:
    """Factory function for creating the app."""
    return app


def run_server(host: str | None = None, port: int | None = None) -> None:
    """Run the proxy server."""
    import uvicorn

    cfg = get_config()

    # logging is configured by the CLI; keep uvicorn from replacing it
    uvicorn.run(
        "toolhost.proxy.server:app",
        host=host or cfg.proxy_host,
        port=port or cfg.proxy_port,
        log_level="warning",
        log_config=None,
        reload=False,
    )
