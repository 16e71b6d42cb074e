"""Tool registry and executor: dict-based dispatch over built-in and MCP tools."""

from dataclasses import replace
from typing import Dict, List, Optional, TYPE_CHECKING

from ..cancellation import CancellationToken
from ..errors import ToolExecutionError
from ..logger import get_logger
from ..messages import ToolCall, ToolResult
from .base import ToolContext, ToolPlugin
from .file_ops import DeleteFileTool, EditFileTool, ReadFileTool
from .search import GrepSearchTool
from .shell import BashOutputTool, KillBashTool, RunTerminalCmdTool

if TYPE_CHECKING:
    from ..mcp_bridge import McpManager

_log = get_logger(__name__)

__all__ = ["ToolRegistry", "ToolExecutor", "BUILTIN_TOOLS"]

BUILTIN_TOOLS = (
    ReadFileTool, EditFileTool, DeleteFileTool, GrepSearchTool,
    RunTerminalCmdTool, BashOutputTool, KillBashTool,
)


class ToolRegistry:
    """Built-in tools first, then tools exposed by connected MCP servers."""

    def __init__(self, mcp_manager: Optional["McpManager"] = None,
                 plugins: Optional[List[ToolPlugin]] = None):
        self.mcp = mcp_manager
        self._tools: Dict[str, ToolPlugin] = {}
        for plugin in plugins if plugins is not None else [cls() for cls in BUILTIN_TOOLS]:
            self.register(plugin)

    def register(self, plugin: ToolPlugin) -> None:
        self._tools[plugin.name] = plugin

    def get(self, name: str) -> Optional[ToolPlugin]:
        plugin = self._tools.get(name)
        if plugin is not None:
            return plugin
        if self.mcp is not None:
            return self.mcp.get_tool_plugin(name)
        return None

    @property
    def builtin_names(self) -> List[str]:
        return list(self._tools)

    def get_tool_schemas(self) -> List[dict]:
        schemas = [plugin.schema() for plugin in self._tools.values()]
        if self.mcp is not None:
            for plugin in self.mcp.list_remote_tools():
                if plugin.name not in self._tools:
                    schemas.append(plugin.schema())
        return schemas


class ToolExecutor:
    """Runs one tool call at a time and always answers with a ToolResult."""

    def __init__(self, registry: ToolRegistry, context: ToolContext):
        self.registry = registry
        self.context = context

    def run(self, tool_call: ToolCall, token: Optional[CancellationToken] = None) -> ToolResult:
        if token is not None and token.cancelled:
            return ToolResult.aborted()

        plugin = self.registry.get(tool_call.name)
        if plugin is None:
            return ToolResult.fail(f"Tool '{tool_call.name}' not found")

        if not tool_call.arguments_valid:
            return ToolResult.fail(
                f"Invalid arguments for tool '{tool_call.name}': could not parse JSON "
                f"object from {tool_call.raw_arguments!r}")

        context = replace(self.context, cancel_token=token)
        try:
            result = plugin.execute(tool_call.arguments, context)
        except ToolExecutionError as e:
            _log.warning("%s", e)
            return ToolResult.fail(str(e))
        except Exception as e:
            _log.error("Tool %s raised %s: %s", tool_call.name, type(e).__name__, e)
            return ToolResult.fail(f"{tool_call.name} error: {type(e).__name__}: {e}")

        if not result.success:
            _log.info("Tool %s failed: %s", tool_call.name, result.error)
        return result

    def format_compact_params(self, tool_call: ToolCall) -> str:
        plugin = self.registry.get(tool_call.name)
        if plugin is None or not tool_call.arguments_valid:
            return ""
        return plugin.format_compact_params(tool_call.arguments)
