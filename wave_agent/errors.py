"""Structured error types for the agent engine."""


class AgentError(Exception):
    """Base error for all agent operations."""
    pass


class ModelCallError(AgentError):
    """The model call failed (network, timeout, provider error)."""

    def __init__(self, message: str, cause: Exception = None):
        self.cause = cause
        super().__init__(message)


class ToolExecutionError(AgentError):
    """Error raised inside a tool; always converted into a failed ToolResult."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(f"{tool_name} error: {message}")


class CompressionError(AgentError):
    """The summariser could not produce a summary."""
    pass


class ProcessSpawnError(AgentError):
    """A background command could not be started."""

    def __init__(self, command: str, message: str):
        self.command = command
        super().__init__(f"Failed to start '{command}': {message}")


class AbortError(AgentError):
    """The current turn was cancelled by the user."""

    def __init__(self, message: str = "aborted"):
        super().__init__(message)


class OrchestratorBusyError(AgentError):
    """submit() was called while another turn is still running."""

    def __init__(self):
        super().__init__("A conversation turn is already in progress.")


class SessionNotFoundError(AgentError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class McpError(AgentError):
    """Error talking to an MCP server."""

    def __init__(self, server: str, message: str):
        self.server = server
        super().__init__(f"MCP server '{server}': {message}")
