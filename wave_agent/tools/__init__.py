from .base import ToolContext, ToolPlugin
from .registry import BUILTIN_TOOLS, ToolExecutor, ToolRegistry
__all__ = ["ToolRegistry", "ToolExecutor", "ToolPlugin", "ToolContext", "BUILTIN_TOOLS"]
