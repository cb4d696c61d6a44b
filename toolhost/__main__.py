"""toolhost CLI entry point."""

from __future__ import annotations

import argparse
import json
import sys


def _version() -> str:
    import importlib.metadata

    try:
        return importlib.metadata.version("toolhost")
    except importlib.metadata.PackageNotFoundError:
        return "0.1.0"


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="toolhost",
        description="toolhost: local LLM chat with MCP tool servers",
    )
    # Global arguments
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {_version()}")
    parser.add_argument("--config", default=None, help="Path to custom configuration file (default: ~/.toolhost/config.json)")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    proxy_parser = subparsers.add_parser("proxy", help="Start the HTTP proxy server")
    proxy_parser.add_argument("--host", default=None, help="Host to bind to")
    proxy_parser.add_argument("--port", type=int, default=None, help="Port to bind to")

    ask_parser = subparsers.add_parser("ask", help="Ask one question, using MCP tools when available")
    ask_parser.add_argument("message", help="The question to ask")
    ask_parser.add_argument("--no-tools", action="store_true", help="Skip MCP servers and chat directly")
    ask_parser.add_argument("--verbose", action="store_true", help="Show the raw model response of each round")

    subparsers.add_parser("tools", help="Discover and list tools from the enabled MCP servers")
    subparsers.add_parser("status", help="Check status of Ollama and the proxy")

    args = parser.parse_args()

    # Load config first so later get_config() calls see the chosen file
    from toolhost.proxy.config import get_config
    get_config(args.config)

    if args.command == "proxy":
        _run_proxy(args)
    elif args.command == "ask":
        sys.exit(_run_ask(args))
    elif args.command == "tools":
        sys.exit(_run_tools(args))
    elif args.command == "status":
        _run_status(args)
    else:
        parser.print_help()
        sys.exit(1)


def _run_proxy(args) -> None:
    """Start the proxy server."""
    from toolhost.logger import setup_logging
    from toolhost.proxy.server import run_server

    setup_logging()
    run_server(host=args.host, port=args.port)


def _run_ask(args) -> int:
    """Run one agent invocation in-process and render its steps."""
    import asyncio

    from rich.console import Console
    from rich.markdown import Markdown
    from rich.panel import Panel

    from toolhost.logger import setup_logging
    from toolhost.proxy.agent import AgentLoop
    from toolhost.proxy.config import get_config
    from toolhost.proxy.ollama import OllamaClient, describe_error

    setup_logging(console=False)
    cfg = get_config()
    console = Console()
    servers = [] if args.no_tools else cfg.enabled_servers()

    async def ask() -> int:
        client = OllamaClient(config=cfg)
        agent = AgentLoop(client, config=cfg)
        messages = [{"role": "user", "content": args.message}]
        try:
            async for step in agent.run(messages, servers):
                data = step.data
                if step.type == "connecting":
                    console.print(f"[dim]» {data['message']}[/dim]")
                elif step.type == "thinking":
                    console.print(f"[yellow]{data['short']}[/yellow]")
                    if args.verbose and data.get("content"):
                        console.print(Panel(data["content"], title="model", border_style="dim"))
                elif step.type == "tool_call":
                    args_text = json.dumps(data["args"], ensure_ascii=False)
                    console.print(f"[cyan]→ {data['name']}[/cyan] [dim]{args_text}[/dim]")
                elif step.type == "tool_result":
                    style = "red" if data["is_error"] else "green"
                    preview = data["result"] if len(data["result"]) <= 300 else data["result"][:300] + "..."
                    console.print(f"[{style}]← {data['name']}[/{style}] [dim]{preview}[/dim]")
                elif step.type == "final":
                    console.print()
                    console.print(Markdown(data["text"]))
        except Exception as e:
            console.print(f"[bold red]Error:[/bold red] {describe_error(e, cfg.ollama_model)}")
            return 1
        return 0

    return asyncio.run(ask())


def _run_tools(args) -> int:
    """Run discovery once and print the catalog."""
    import asyncio

    from rich.console import Console
    from rich.table import Table

    from toolhost.logger import setup_logging
    from toolhost.proxy.config import get_config
    from toolhost.proxy.errors import DiscoveryTimeout
    from toolhost.proxy.mcp import discover_tools

    setup_logging(console=False)
    cfg = get_config()
    console = Console()
    servers = cfg.enabled_servers()
    if not servers:
        console.print("[yellow]No MCP servers enabled.[/yellow] Add entries to `mcp_servers` in the config file.")
        return 1

    async def discover():
        return await discover_tools(servers, timeout=cfg.discovery_timeout)

    with console.status(f"Connecting to {len(servers)} MCP server(s)..."):
        try:
            catalog = asyncio.run(discover())
        except DiscoveryTimeout as e:
            console.print(f"[bold red]{e}[/bold red]")
            return 1

    try:
        for report in catalog.reports:
            if report.ok:
                console.print(f"[green]●[/green] {report.name}: {report.tool_count} tools ({report.duration:.1f}s)")
            else:
                console.print(f"[red]●[/red] {report.name}: {report.error}")

        if catalog.is_empty:
            return 1

        table = Table(title=f"{len(catalog)} tools")
        table.add_column("Server", style="cyan")
        table.add_column("Tool", style="bold")
        table.add_column("Description")
        for entry in catalog:
            table.add_row(entry.server, entry.tool.name, entry.tool.description)
        console.print(table)
    finally:
        catalog.close()
    return 0


def _run_status(args) -> None:
    """Check status of Ollama and the proxy."""
    import asyncio

    import httpx
    from rich.console import Console

    from toolhost.proxy.config import get_config

    console = Console()
    ON = "[green]● online[/green]"
    OFF = "[red]● offline[/red]"

    async def check():
        cfg = get_config()

        console.print()
        console.print(f"[bold]toolhost[/bold] [dim]v{_version()}[/dim]")

        # ── Ollama ──
        ollama_status = OFF
        model_names: list[str] = []
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{cfg.ollama_url}/api/tags")
                model_names = [m["name"] for m in resp.json().get("models", [])]
                ollama_status = ON
        except (httpx.HTTPError, ValueError, KeyError):
            pass

        console.print()
        console.print(f"  [bold]Ollama[/bold]        {ollama_status}")
        console.print(f"  [dim]Endpoint:[/dim]     {cfg.ollama_url}")
        console.print(f"  [dim]Active Model:[/dim] [yellow]{cfg.ollama_model}[/yellow]")
        if model_names:
            shown = [f"[green]{n}[/green]" if n == cfg.ollama_model else f"[dim]{n}[/dim]" for n in model_names]
            console.print(f"  [dim]Available:[/dim]    {'  '.join(shown)}")

        # ── MCP servers ──
        console.print()
        console.print(f"  [bold]MCP servers[/bold]   {len(cfg.enabled_servers())} enabled / {len(cfg.mcp_servers)} configured")
        for spec in cfg.mcp_servers:
            mark = "[green]●[/green]" if spec.enabled else "[dim]○[/dim]"
            console.print(f"    {mark} {spec.name} [dim]{spec.command} {' '.join(spec.args)}[/dim]")

        # ── Proxy ──
        proxy_url = f"http://{cfg.proxy_host}:{cfg.proxy_port}"
        proxy_status = OFF
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                resp = await client.get(f"{proxy_url}/api/status")
                if resp.status_code == 200:
                    proxy_status = ON
        except httpx.HTTPError:
            pass

        console.print()
        console.print(f"  [bold]Proxy[/bold]         {proxy_status}")
        console.print(f"  [dim]Endpoint:[/dim]     {proxy_url}")
        console.print()

    asyncio.run(check())


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        sys.exit(0)
