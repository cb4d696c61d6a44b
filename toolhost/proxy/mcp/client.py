"""Stdio JSON-RPC client for one MCP helper process.

One line = one message in both directions. Helpers that only speak the
Content-Length framed variant of the protocol are not supported.

A client is used by one caller at a time: requests are issued
synchronously and replies are read back in order.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from typing import IO, Any, Mapping, Sequence

from ..errors import DecodeError, ProtocolError, SpawnError, TransportError

logger = logging.getLogger("toolhost.mcp")

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "toolhost", "version": "0.1.0"}

# Windows: don't flash a console window per helper
CREATE_NO_WINDOW = 0x08000000


@dataclass(frozen=True)
class ToolDescriptor:
    """One entry of a ``tools/list`` reply. Names are unique per server only."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


class McpClient:
    """Owns one helper subprocess and its JSON-RPC channel.

    State goes Spawned -> Initialized. ``list_tools`` and ``call_tool``
    initialize lazily on first use, so a client is initialized exactly once.
    """

    def __init__(self, process: subprocess.Popen, name: str = "") -> None:
        self.name = name or str(process.args)
        self._process: subprocess.Popen | None = process
        self._stdin: IO[str] | None = process.stdin
        self._stdout: IO[str] | None = process.stdout
        self._request_id = 0
        self._initialized = False
        self._lock = threading.Lock()
        self.server_info: dict[str, Any] = {}

        self._stderr_thread: threading.Thread | None = None
        if process.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._drain_stderr,
                args=(process.stderr,),
                name=f"mcp-stderr-{self.name}",
                daemon=True,
            )
            self._stderr_thread.start()

    # ── Lifecycle ─────────────────────────────────────────────────────

    @classmethod
    def connect(
        cls,
        command: str,
        args: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        name: str | None = None,
    ) -> McpClient:
        """Launch a helper with piped stdin/stdout/stderr."""
        actual_command = command
        # Popen on Windows only finds .exe without a shell
        if sys.platform == "win32" and command == "npx":
            actual_command = "npx.cmd"

        merged_env = {**os.environ, **env} if env else None
        kwargs: dict[str, Any] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = CREATE_NO_WINDOW
        else:
            # own process group, so close() can stop grandchildren too
            kwargs["start_new_session"] = True

        argv = [actual_command, *(args or [])]
        logger.info(f"Starting MCP server: {' '.join(argv)}")
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                env=merged_env,
                **kwargs,
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn MCP server ({actual_command}): {e}") from e

        return cls(process, name=name or actual_command)

    def close(self) -> None:
        """Stop the helper and every process it started, then release the pipes.

        No shutdown handshake is attempted. A request still blocked on the
        pipe fails with ``TransportError`` once the helper is gone.
        """
        process = self._process
        if process is None:
            return
        self._process = None
        self._stdin = None
        self._stdout = None

        # holding the lock means no request is reading or writing the pipes
        idle = self._lock.acquire(blocking=False)
        if idle:
            _close_pipe(process.stdin)

        self._signal(process, kill=False)
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"MCP server {self.name} ignored terminate, killing it")
            self._signal(process, kill=True)
            process.wait()

        if not idle:
            idle = self._lock.acquire(timeout=5)
        if idle:
            _close_pipe(process.stdin)
            _close_pipe(process.stdout)
            self._lock.release()
        else:
            logger.warning(f"MCP server {self.name}: a request is still blocked on its pipe, leaving it open")
        logger.info(f"MCP server {self.name} stopped")

    def _signal(self, process: subprocess.Popen, kill: bool) -> None:
        """Signal the helper's whole process group; launchers like npx fork the real server."""
        if sys.platform != "win32":
            try:
                os.killpg(process.pid, signal.SIGKILL if kill else signal.SIGTERM)
                return
            except (ProcessLookupError, PermissionError):
                pass
        if process.poll() is None:
            if kill:
                process.kill()
            else:
                process.terminate()

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def __enter__(self) -> McpClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __del__(self) -> None:
        if getattr(self, "_process", None) is not None:
            self.close()

    def _drain_stderr(self, stream: IO[str]) -> None:
        try:
            for line in stream:
                line = line.rstrip()
                if line:
                    logger.debug(f"[{self.name} stderr] {line}")
        except (OSError, ValueError):
            pass
        finally:
            try:
                stream.close()
            except OSError:
                pass

    # ── Framing ───────────────────────────────────────────────────────

    def _write_message(self, message: dict[str, Any]) -> None:
        if self._stdin is None:
            raise TransportError(f"MCP server {self.name} is closed (stdin not available)")
        line = json.dumps(message, ensure_ascii=False) + "\n"
        try:
            self._stdin.write(line)
            self._stdin.flush()
        except (OSError, ValueError) as e:
            raise TransportError(f"Failed to write to MCP server {self.name}: {e}") from e

    def _read_message(self) -> dict[str, Any]:
        if self._stdout is None:
            raise TransportError(f"MCP server {self.name} is closed (stdout not available)")
        try:
            raw = self._stdout.readline()
        except (OSError, ValueError) as e:
            raise TransportError(f"Failed to read from MCP server {self.name}: {e}") from e

        if not raw:
            raise TransportError(f"MCP server {self.name} closed connection (EOF)")
        if not raw.endswith("\n"):
            raise TransportError(f"MCP server {self.name} closed connection mid-line: {raw[:200]!r}")

        logger.debug(f"[{self.name}] Received: {raw.strip()[:500]}")
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Failed to parse JSON from {self.name}: {e}") from e
        if not isinstance(message, dict):
            raise DecodeError(f"Expected a JSON object from {self.name}, got {type(message).__name__}")
        return message

    # ── JSON-RPC ──────────────────────────────────────────────────────

    def _next_id(self) -> int:
        request_id = self._request_id
        self._request_id += 1
        return request_id

    def send_request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a request and return its ``result``."""
        with self._lock:
            request = {
                "jsonrpc": "2.0",
                "id": self._next_id(),
                "method": method,
                "params": params if params is not None else {},
            }
            logger.debug(f"[{self.name}] Sending: {json.dumps(request)[:500]}")
            self._write_message(request)
            response = self._read_message()

        if response.get("id") != request["id"]:
            logger.warning(
                f"[{self.name}] Reply id {response.get('id')!r} does not match request id {request['id']}"
            )

        if "error" in response:
            err = response["error"]
            if isinstance(err, dict):
                raise ProtocolError(str(err.get("message", err)), code=err.get("code"), data=err.get("data"))
            raise ProtocolError(str(err))

        if "result" not in response:
            raise DecodeError(f"Response from {self.name} has neither 'result' nor 'error'")
        return response["result"]

    def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Fire-and-forget: no id, no reply is read."""
        notification = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params if params is not None else {},
        }
        with self._lock:
            logger.debug(f"[{self.name}] Sending notification: {json.dumps(notification)[:500]}")
            self._write_message(notification)

    # ── MCP protocol ──────────────────────────────────────────────────

    def initialize(self) -> dict[str, Any]:
        """Perform the initialize handshake; later calls do not resend it."""
        if self._initialized:
            logger.warning(f"MCP server {self.name} is already initialized")
            return self.server_info

        result = self.send_request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": dict(CLIENT_INFO),
        })
        self.send_notification("notifications/initialized")

        self.server_info = result if isinstance(result, dict) else {}
        self._initialized = True
        return self.server_info

    def list_tools(self) -> list[ToolDescriptor]:
        if not self._initialized:
            self.initialize()

        result = self.send_request("tools/list")
        raw_tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(raw_tools, list):
            raise DecodeError(f"Invalid tools response from {self.name}: missing 'tools' list")

        tools: list[ToolDescriptor] = []
        for raw in raw_tools:
            if not isinstance(raw, dict):
                raise DecodeError(f"Invalid tool entry from {self.name}: {raw!r}")
            schema = raw.get("inputSchema")
            tools.append(ToolDescriptor(
                name=str(raw.get("name") or ""),
                description=str(raw.get("description") or ""),
                input_schema=schema if isinstance(schema, dict) else {},
            ))
        return tools

    def call_tool(self, name: str, arguments: Any = None) -> Any:
        """Invoke a tool and return the raw ``result`` value."""
        if not self._initialized:
            self.initialize()

        return self.send_request("tools/call", {
            "name": name,
            "arguments": arguments if arguments is not None else {},
        })

    def __repr__(self) -> str:
        state = "initialized" if self._initialized else ("spawned" if self.is_running else "closed")
        return f"<McpClient {self.name} pid={self.pid} {state}>"


def _close_pipe(pipe: IO[str] | None) -> None:
    if pipe is None:
        return
    try:
        pipe.close()
    except (OSError, ValueError):
        pass
