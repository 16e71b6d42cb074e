"""Bridge to MCP servers declared in ``.mcp.json``.

Each server is launched over stdio with the official ``mcp`` SDK. The agent
loop is synchronous, so every operation opens a short-lived client session
inside ``asyncio.run``: connecting lists the server's tools, calling a tool
spawns the server again and invokes it.

Servers therefore keep no state between calls: whatever a server holds in
memory is gone by the next call. Servers that need state must persist it themselves.
"""

import asyncio
import json
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import McpError
from .logger import get_logger
from .messages import ToolResult
from .tools.base import ToolContext, ToolPlugin, function_schema

_log = get_logger(__name__)

STATELESS_NOTE = "Each MCP tool call starts a fresh server process; server-side state is not kept between calls."

__all__ = ["McpManager", "McpToolPlugin", "McpServerConfig", "McpServerStatus",
           "McpRemoteTool", "ServerState", "format_call_result", "STATELESS_NOTE"]


class ServerState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class McpServerConfig:
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "McpServerConfig":
        if not isinstance(data, dict) or not data.get("command"):
            raise McpError("config", "server entry needs a 'command'")
        return cls(
            command=str(data["command"]),
            args=[str(a) for a in data.get("args") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"command": self.command}
        if self.args:
            d["args"] = list(self.args)
        if self.env:
            d["env"] = dict(self.env)
        return d


@dataclass
class McpRemoteTool:
    name: str
    description: str = ""
    input_schema: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class McpServerStatus:
    name: str
    config: McpServerConfig
    status: ServerState = ServerState.DISCONNECTED
    tools: List[McpRemoteTool] = field(default_factory=list)
    error: Optional[str] = None
    last_connected: Optional[float] = None

    @property
    def tool_count(self) -> int:
        return len(self.tools)


def format_call_result(result: Any) -> str:
    """Flatten a ``CallToolResult`` into text.

    Text parts are joined by newlines, embedded resources become
    ``[Resource: <uri>]`` and images are counted rather than inlined.
    """
    parts: List[str] = []
    images = 0
    for item in getattr(result, "content", None) or []:
        kind = getattr(item, "type", None)
        if kind == "text":
            parts.append(getattr(item, "text", "") or "")
        elif kind == "image":
            images += 1
        elif kind == "resource":
            resource = getattr(item, "resource", None)
            parts.append(f"[Resource: {getattr(resource, 'uri', '') or ''}]")
        elif hasattr(item, "model_dump"):
            parts.append(json.dumps(item.model_dump(mode="json"), ensure_ascii=False))
        else:
            parts.append(str(item))
    if images:
        parts.append(f"[{images} image{'s' if images != 1 else ''} returned]")
    return "\n".join(parts) if parts else "No content"


class McpToolPlugin(ToolPlugin):
    """Exposes one remote MCP tool through the local plugin contract."""

    def __init__(self, manager: "McpManager", server_name: str, tool: McpRemoteTool):
        self.manager = manager
        self.server_name = server_name
        self.name = tool.name
        self.description = f"[MCP: {server_name}] {tool.description}".strip()
        self.input_schema = tool.input_schema or {"type": "object", "properties": {}}
        self.parameters = self.input_schema.get("properties", {})
        self.required = list(self.input_schema.get("required", []))

    def schema(self) -> dict:
        return function_schema(self.name, self.description, self.parameters, self.required)

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        return self.manager.call_remote_tool(self.name, params)

    def format_compact_params(self, params: Dict[str, Any]) -> str:
        text = json.dumps(params, ensure_ascii=False)
        return text if len(text) <= 80 else text[:77] + "..."


SessionOperation = Callable[[Any], Awaitable[Any]]


class McpManager:
    """Owns MCP server configuration and per-server connection state."""

    def __init__(self, config_path: Optional[Path] = None,
                 on_change: Optional[Callable[[List[McpServerStatus]], None]] = None,
                 call_timeout: float = 120.0):
        self.config_path = Path(config_path) if config_path else None
        self.call_timeout = call_timeout
        self._servers: Dict[str, McpServerStatus] = {}
        self._lock = threading.RLock()
        self._on_change = on_change

    # ── Configuration ─────────────────────────────────────────

    def load_config(self) -> bool:
        """Read ``.mcp.json``; keeps runtime state for servers already known."""
        if self.config_path is None or not self.config_path.exists():
            return False
        try:
            data = json.loads(self.config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            _log.error("Failed to load %s: %s", self.config_path, e)
            return False

        entries = data.get("mcpServers") if isinstance(data, dict) else None
        if not isinstance(entries, dict):
            _log.warning("%s has no 'mcpServers' table", self.config_path)
            return False

        with self._lock:
            for name, raw in entries.items():
                try:
                    config = McpServerConfig.from_dict(raw)
                except McpError as e:
                    _log.warning("Skipping MCP server %s: %s", name, e)
                    continue
                existing = self._servers.get(name)
                if existing is not None:
                    existing.config = config
                else:
                    self._servers[name] = McpServerStatus(name=name, config=config)
        self._notify()
        return True

    def save_config(self) -> bool:
        if self.config_path is None:
            return False
        with self._lock:
            data = {"mcpServers": {n: s.config.to_dict() for n, s in self._servers.items()}}
        try:
            self.config_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        except OSError as e:
            _log.error("Failed to save %s: %s", self.config_path, e)
            return False
        return True

    def add_server(self, name: str, config: McpServerConfig) -> bool:
        with self._lock:
            if name in self._servers:
                return False
            self._servers[name] = McpServerStatus(name=name, config=config)
        self._notify()
        return True

    def remove_server(self, name: str) -> bool:
        with self._lock:
            removed = self._servers.pop(name, None) is not None
        if removed:
            self._notify()
        return removed

    # ── State ─────────────────────────────────────────────────

    def list_servers(self) -> List[McpServerStatus]:
        with self._lock:
            return list(self._servers.values())

    def get_server(self, name: str) -> Optional[McpServerStatus]:
        with self._lock:
            return self._servers.get(name)

    def _update(self, name: str, **changes) -> None:
        with self._lock:
            server = self._servers.get(name)
            if server is None:
                return
            for key, value in changes.items():
                setattr(server, key, value)
        self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self.list_servers())
        except Exception as e:
            _log.warning("MCP listener failed: %s", e)

    # ── Connections ───────────────────────────────────────────

    def _run(self, config: McpServerConfig, operation: SessionOperation) -> Any:
        """Open a stdio session to the server, run ``operation`` on it, close it."""
        return asyncio.run(asyncio.wait_for(self._with_session(config, operation),
                                            timeout=self.call_timeout))

    @staticmethod
    async def _with_session(config: McpServerConfig, operation: SessionOperation) -> Any:
        from contextlib import AsyncExitStack

        from mcp import ClientSession, StdioServerParameters
        from mcp.client.stdio import stdio_client

        params = StdioServerParameters(
            command=config.command,
            args=config.args,
            env={**os.environ, **config.env},
        )
        async with AsyncExitStack() as stack:
            read, write = await stack.enter_async_context(stdio_client(params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
            return await operation(session)

    def connect(self, name: str) -> bool:
        server = self.get_server(name)
        if server is None:
            _log.warning("Unknown MCP server: %s", name)
            return False

        self._update(name, status=ServerState.CONNECTING, error=None)

        async def _list(session):
            return await session.list_tools()

        try:
            response = self._run(server.config, _list)
        except Exception as e:
            message = str(e) or type(e).__name__
            _log.error("Failed to connect to MCP server %s: %s", name, message)
            self._update(name, status=ServerState.ERROR, error=message, tools=[])
            return False

        tools = [
            McpRemoteTool(name=t.name, description=t.description or "",
                          input_schema=dict(t.inputSchema or {}))
            for t in response.tools
        ]
        self._update(name, status=ServerState.CONNECTED, tools=tools,
                     error=None, last_connected=time.time())
        _log.info("Connected to MCP server %s (%d tools)", name, len(tools))
        return True

    def disconnect(self, name: str) -> bool:
        if self.get_server(name) is None:
            return False
        self._update(name, status=ServerState.DISCONNECTED, tools=[])
        _log.info("Disconnected from MCP server %s", name)
        return True

    def reconnect(self, name: str) -> bool:
        self.disconnect(name)
        return self.connect(name)

    def connect_all(self) -> Dict[str, bool]:
        return {s.name: self.connect(s.name) for s in self.list_servers()}

    def cleanup(self) -> None:
        for server in self.list_servers():
            if server.status != ServerState.DISCONNECTED:
                self.disconnect(server.name)

    # ── Tools ─────────────────────────────────────────────────

    def _find_tool_server(self, tool_name: str) -> Optional[McpServerStatus]:
        for server in self.list_servers():
            if server.status == ServerState.CONNECTED and any(t.name == tool_name for t in server.tools):
                return server
        return None

    def list_remote_tools(self) -> List[McpToolPlugin]:
        plugins: Dict[str, McpToolPlugin] = {}
        for server in self.list_servers():
            if server.status != ServerState.CONNECTED:
                continue
            for tool in server.tools:
                plugins.setdefault(tool.name, McpToolPlugin(self, server.name, tool))
        return list(plugins.values())

    def get_tool_plugin(self, name: str) -> Optional[McpToolPlugin]:
        server = self._find_tool_server(name)
        if server is None:
            return None
        tool = next(t for t in server.tools if t.name == name)
        return McpToolPlugin(self, server.name, tool)

    def is_mcp_tool(self, name: str) -> bool:
        return self._find_tool_server(name) is not None

    def call_remote_tool(self, name: str, params: Dict[str, Any]) -> ToolResult:
        server = self._find_tool_server(name)
        if server is None:
            return ToolResult.fail(f"MCP tool '{name}' not found or server disconnected")

        async def _call(session):
            return await session.call_tool(name, params)

        try:
            result = self._run(server.config, _call)
        except Exception as e:
            message = str(e) or type(e).__name__
            _log.error("MCP tool %s on %s failed: %s", name, server.name, message)
            return ToolResult.fail(f"Tool execution failed: {message}")

        text = format_call_result(result)
        if getattr(result, "isError", False):
            return ToolResult(success=False, content=text, error=text,
                              short_result=f"{server.name}: error")
        return ToolResult(success=True, content=text, short_result=f"{server.name}: {name}")
