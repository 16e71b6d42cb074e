"""Tool plugin contract shared by built-in and MCP-bridged tools."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from ..messages import ToolResult

if TYPE_CHECKING:
    from ..cancellation import CancellationToken
    from ..process_manager import ProcessManager

__all__ = ["ToolPlugin", "ToolContext", "function_schema", "string_prop",
           "integer_prop", "boolean_prop", "resolve_path", "require_string"]


def function_schema(name: str, description: str, properties: dict,
                    required: list) -> dict:
    """Build an OpenAI-compatible function schema."""
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


def string_prop(desc: str, **kw) -> dict:
    return {"type": "string", "description": desc, **kw}


def integer_prop(desc: str, **kw) -> dict:
    return {"type": "integer", "description": desc, **kw}


def boolean_prop(desc: str, **kw) -> dict:
    return {"type": "boolean", "description": desc, **kw}


@dataclass
class ToolContext:
    workdir: str
    cancel_token: Optional["CancellationToken"] = None
    process_manager: Optional["ProcessManager"] = None
    # (existing, code_edit, cancel_token) -> merged file content
    apply_edit: Optional[Callable[[str, str, Optional["CancellationToken"]], str]] = None
    command_timeout: int = 120

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled


def resolve_path(path: str, workdir: str) -> Path:
    """Resolve ``path`` against ``workdir``; absolute paths are kept as given."""
    p = Path(os.path.expanduser(path))
    if not p.is_absolute():
        p = Path(workdir) / p
    return p.resolve()


def require_string(params: Dict[str, Any], key: str) -> Optional[str]:
    """Return an error message when ``params[key]`` is not a non-empty string."""
    value = params.get(key)
    if not value or not isinstance(value, str):
        return f"{key} parameter is required and must be a string"
    return None


class ToolPlugin:
    """A tool the model can call.

    Subclasses set ``name``, ``description`` and ``parameters`` and implement
    :meth:`execute`. ``execute`` validates its own parameters and reports
    problems through a failed :class:`ToolResult` instead of raising.
    """

    name: str = ""
    description: str = ""
    parameters: Dict[str, Any] = {}
    required: List[str] = []

    def schema(self) -> dict:
        return function_schema(self.name, self.description, self.parameters, self.required)

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        raise NotImplementedError

    def format_compact_params(self, params: Dict[str, Any]) -> str:
        """One-line summary of the call for the UI."""
        for key in self.required:
            value = params.get(key)
            if isinstance(value, str) and value:
                return value
        return ""
