"""MCP (Model Context Protocol) servers as a source of extra tools.

Each configured server is connected once at startup; its tools are
registered in the ToolRegistry under ``mcp__<server>__<tool>`` names and
dispatched back to the owning server on invocation.
"""

import asyncio
import atexit
import copy
import json
import logging
import re
import threading
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from typing import Any

from . import fmt
from .errors import ConfigError, DuplicateNameError, ToolInvocationError
from .registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 30  # seconds
CALL_TIMEOUT = 120

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]")
_DOUBLE_UNDER_RE = re.compile(r"__+")


class McpShutdownError(Exception):
    """Raised when a tool is called while the manager is closing or closed."""


@dataclass(frozen=True)
class McpTool:
    """One tool exposed by a server, already namespaced for the registry."""

    server: str
    name: str  # namespaced
    original_name: str
    description: str
    input_schema: dict


@dataclass
class _Server:
    name: str
    config: dict
    session: Any = None
    tools: list[McpTool] = field(default_factory=list)
    task: asyncio.Task | None = None
    stop: asyncio.Event | None = None
    failed: bool = False


def validate_server_name(name: str) -> None:
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+")
    if "__" in name:
        raise ConfigError(f"MCP server name {name!r} must not contain double underscores")


def namespaced_name(server: str, tool_name: str) -> str:
    sanitized = _DOUBLE_UNDER_RE.sub("_", _SANITIZE_RE.sub("_", tool_name)).strip("_-")
    return f"mcp__{server}__{sanitized}"


def _convert_schema(input_schema: dict | None) -> dict:
    """Make an MCP inputSchema acceptable as OpenAI function parameters."""
    schema = copy.deepcopy(input_schema or {})
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.pop("$schema", None)
    schema.pop("$id", None)
    return schema


def _block_text(block) -> str:
    kind = getattr(block, "type", None)
    if kind == "text":
        return block.text
    if kind in ("image", "audio"):
        mime = getattr(block, "mimeType", "unknown")
        return f"[{kind}: {mime}, {len(getattr(block, 'data', '') or '')} bytes]"
    if kind == "resource":
        resource = getattr(block, "resource", None)
        text = getattr(resource, "text", None)
        if text:
            return text
        return f"[resource: {getattr(resource, 'uri', 'unknown')}]"
    return f"[{kind or 'unknown'}: unsupported content type]"


def _normalize_result(result) -> tuple[str, bool]:
    """Flatten a CallToolResult to ``(text, is_error)``.

    Text blocks carrying a JSON ``{"ok": ...}`` envelope are unwrapped.
    """
    for block in result.content:
        if getattr(block, "type", None) != "text" or not isinstance(block.text, str):
            continue
        try:
            payload = json.loads(block.text)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict) or "ok" not in payload:
            continue
        if payload["ok"] is False:
            msg = payload.get("error") or payload.get("message") or "MCP tool returned an error"
            return str(msg), True
        if payload["ok"] is True and "result" in payload:
            return json.dumps(payload["result"], ensure_ascii=False), False

    text = "\n".join(_block_text(b) for b in result.content)
    if result.isError:
        return text or "MCP tool returned an error", True
    return text or "(empty result)", False


class McpManager:
    """Owns the connections to all configured MCP servers.

    The MCP SDK is async; the rest of deepseek-cli is not. An event loop
    runs on a daemon thread and public methods block on coroutines
    submitted to it. Each server's transport and ClientSession live inside
    one long-running task, so anyio cancel scopes are entered and exited
    in the same task.
    """

    def __init__(self, server_configs: dict[str, dict]):
        for name in server_configs:
            validate_server_name(name)
        self._servers = {name: _Server(name, cfg) for name, cfg in server_configs.items()}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._closed = False

    # -- lifecycle --

    def start(self) -> None:
        """Start the loop thread and connect every server.

        A server that fails to connect is reported and skipped; the others
        stay usable.
        """
        if self._closed:
            raise McpShutdownError("manager is already closed")
        ready = threading.Event()
        self._loop = asyncio.new_event_loop()

        def _run():
            self._loop.call_soon(ready.set)
            self._loop.run_forever()

        self._thread = threading.Thread(target=_run, name="deepseek-cli-mcp", daemon=True)
        self._thread.start()
        if not ready.wait(timeout=10):
            raise McpShutdownError("MCP event loop failed to start")

        for server in self._servers.values():
            try:
                self._connect(server)
            except Exception as e:
                server.failed = True
                fmt.mcp_server_error(server.name, str(e) or type(e).__name__)
            else:
                fmt.mcp_server_start(server.name, len(server.tools))

        atexit.register(self.close)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._loop is not None and self._loop.is_running():
            try:
                self._submit(self._stop_all(), timeout=10)
            except Exception as e:
                logger.warning("MCP shutdown did not complete: %s", e)
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=10)
            if self._thread.is_alive():
                logger.warning("MCP event loop thread did not stop cleanly")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.close()

    # -- tools --

    def tools(self) -> list[McpTool]:
        """Tools from every connected server, minus names that collide."""
        seen: dict[str, str] = {}
        out = []
        for server in self._servers.values():
            for tool in server.tools:
                if tool.name in seen:
                    fmt.mcp_server_error(
                        server.name,
                        f"tool {tool.original_name!r} collides with one from "
                        f"{seen[tool.name]!r}; skipped",
                    )
                    continue
                seen[tool.name] = server.name
                out.append(tool)
        return out

    def call_tool(self, tool: McpTool, arguments: dict) -> tuple[str, bool]:
        """Run one tool on its server. Returns ``(text, is_error)``."""
        if self._closed:
            raise McpShutdownError("manager is closed")
        server = self._servers.get(tool.server)
        if server is None or server.failed or server.session is None:
            return f"MCP server {tool.server!r} is unavailable", True
        try:
            result = self._submit(
                server.session.call_tool(tool.original_name, arguments),
                timeout=CALL_TIMEOUT,
            )
        except McpShutdownError:
            raise
        except Exception as e:
            server.failed = True
            logger.debug("MCP call %s failed", tool.name, exc_info=True)
            return f"MCP server {tool.server!r} failed: {e}", True
        return _normalize_result(result)

    # -- internals --

    def _submit(self, coro, timeout: float):
        if self._loop is None or not self._loop.is_running():
            coro.close()
            raise McpShutdownError("event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            future.cancel()
            raise

    def _connect(self, server: _Server) -> None:
        connected = threading.Event()
        errors: list[BaseException] = []

        async def _spawn():
            server.stop = asyncio.Event()
            server.task = asyncio.create_task(
                self._serve(server, connected, errors), name=f"mcp-{server.name}"
            )

        self._submit(_spawn(), timeout=5)
        if not connected.wait(timeout=CONNECT_TIMEOUT):
            if server.task is not None:
                self._loop.call_soon_threadsafe(server.task.cancel)
            raise TimeoutError(f"startup timed out after {CONNECT_TIMEOUT}s")
        if errors:
            raise errors[0]

    async def _serve(self, server: _Server, connected: threading.Event, errors: list) -> None:
        """Connect, publish tools, then idle until asked to stop."""
        import mcp

        async with AsyncExitStack() as stack:
            try:
                if "url" in server.config:
                    from mcp.client.sse import sse_client

                    streams = await stack.enter_async_context(
                        sse_client(
                            url=server.config["url"],
                            headers=server.config.get("headers"),
                            timeout=10,
                            sse_read_timeout=300,
                        )
                    )
                else:
                    params = mcp.StdioServerParameters(
                        command=server.config["command"],
                        args=server.config.get("args", []),
                        env=server.config.get("env"),
                    )
                    streams = await stack.enter_async_context(mcp.stdio_client(params))
                session = await stack.enter_async_context(mcp.ClientSession(*streams))
                await session.initialize()
                listed = await session.list_tools()
            except Exception as e:
                errors.append(e)
                connected.set()
                return

            server.session = session
            server.tools = [
                McpTool(
                    server=server.name,
                    name=namespaced_name(server.name, t.name),
                    original_name=t.name,
                    description=t.description or f"MCP tool from {server.name}",
                    input_schema=_convert_schema(t.inputSchema),
                )
                for t in listed.tools
            ]
            connected.set()
            await server.stop.wait()
        server.session = None

    async def _stop_all(self) -> None:
        for server in self._servers.values():
            if server.stop is not None:
                server.stop.set()
        tasks = [s.task for s in self._servers.values() if s.task is not None]
        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.warning("MCP server task error during shutdown: %s", outcome)


def _capability(manager: McpManager, tool: McpTool):
    def run(args: dict) -> str:
        text, is_error = manager.call_tool(tool, args)
        if is_error:
            raise ToolInvocationError(text)
        return text

    return run


def register_mcp_tools(registry: ToolRegistry, manager: McpManager) -> list[str]:
    """Add the manager's tools to ``registry``. Returns the names registered.

    A name already taken in the registry is reported and skipped.
    """
    added = []
    for tool in manager.tools():
        definition = ToolDefinition(
            name=tool.name,
            description=tool.description,
            capability=_capability(manager, tool),
            input_schema=tool.input_schema,
        )
        try:
            registry.register(definition)
        except DuplicateNameError as e:
            fmt.mcp_server_error(tool.server, str(e))
            continue
        added.append(tool.name)
    return added
