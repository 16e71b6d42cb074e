"""Tests for tool resolution and execution."""

from unittest.mock import MagicMock

from wave_agent.cancellation import CancellationToken
from wave_agent.errors import ToolExecutionError
from wave_agent.messages import ToolCall, ToolResult
from wave_agent.tools import BUILTIN_TOOLS, ToolContext, ToolExecutor, ToolPlugin, ToolRegistry


class RaisingTool(ToolPlugin):
    name = "raiser"

    def __init__(self, exc):
        self.exc = exc

    def execute(self, params, context):
        raise self.exc


def test_builtin_schemas():
    registry = ToolRegistry()
    names = [s["function"]["name"] for s in registry.get_tool_schemas()]
    assert names == [cls.name for cls in BUILTIN_TOOLS]
    assert {"read_file", "edit_file", "delete_file", "grep_search",
            "run_terminal_cmd", "bash_output", "kill_bash"} == set(names)
    for schema in registry.get_tool_schemas():
        assert schema["type"] == "function"
        assert schema["function"]["parameters"]["type"] == "object"


def test_unknown_tool(tmp_path):
    executor = ToolExecutor(ToolRegistry(), ToolContext(workdir=str(tmp_path)))
    result = executor.run(ToolCall(id="1", name="nope"))
    assert result.success is False
    assert result.error == "Tool 'nope' not found"


def test_exceptions_become_failed_results(tmp_path):
    executor = ToolExecutor(ToolRegistry(plugins=[RaisingTool(ValueError("bad input"))]),
                            ToolContext(workdir=str(tmp_path)))
    result = executor.run(ToolCall(id="1", name="raiser"))
    assert result.success is False
    assert "ValueError" in result.error and "bad input" in result.error


def test_tool_execution_error_message(tmp_path):
    executor = ToolExecutor(
        ToolRegistry(plugins=[RaisingTool(ToolExecutionError("raiser", "disk full"))]),
        ToolContext(workdir=str(tmp_path)))
    result = executor.run(ToolCall(id="1", name="raiser"))
    assert result.error == "raiser error: disk full"


def test_cancelled_token_short_circuits(tmp_path):
    token = CancellationToken()
    token.cancel()
    executor = ToolExecutor(ToolRegistry(), ToolContext(workdir=str(tmp_path)))
    result = executor.run(ToolCall(id="1", name="read_file", arguments={"target_file": "x"}), token)
    assert result.error == "aborted"


def test_context_carries_token(tmp_path):
    seen = {}

    class ContextEcho(ToolPlugin):
        name = "context_echo"

        def execute(self, params, context):
            seen["token"] = context.cancel_token
            seen["workdir"] = context.workdir
            return ToolResult(success=True, content="ok")

    base = ToolContext(workdir=str(tmp_path))
    executor = ToolExecutor(ToolRegistry(plugins=[ContextEcho()]), base)
    token = CancellationToken()
    executor.run(ToolCall(id="1", name="context_echo"), token)

    assert seen["token"] is token
    assert seen["workdir"] == str(tmp_path)
    assert base.cancel_token is None


def test_mcp_fallback(tmp_path):
    remote = MagicMock(spec=ToolPlugin)
    remote.name = "remote_search"
    remote.execute.return_value = ToolResult(success=True, content="from mcp")
    remote.schema.return_value = {"type": "function", "function": {"name": "remote_search"}}
    mcp = MagicMock()
    mcp.get_tool_plugin.side_effect = lambda name: remote if name == "remote_search" else None
    mcp.list_remote_tools.return_value = [remote]

    registry = ToolRegistry(mcp_manager=mcp)
    executor = ToolExecutor(registry, ToolContext(workdir=str(tmp_path)))

    result = executor.run(ToolCall(id="1", name="remote_search", arguments={"q": "x"}))

    assert result.content == "from mcp"
    assert remote.execute.call_args[0][0] == {"q": "x"}
    assert registry.get_tool_schemas()[-1]["function"]["name"] == "remote_search"
    assert executor.run(ToolCall(id="2", name="ghost")).error == "Tool 'ghost' not found"
