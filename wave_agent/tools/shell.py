"""Shell tools: foreground/background commands and background shell control."""

import os
import signal
import subprocess
from typing import Any, Dict, Optional

from ..errors import ProcessSpawnError
from ..logger import get_logger
from ..messages import ToolResult
from .base import (
    ToolContext, ToolPlugin, boolean_prop, integer_prop, require_string, string_prop,
)

_log = get_logger(__name__)

__all__ = ["RunTerminalCmdTool", "BashOutputTool", "KillBashTool", "MAX_TIMEOUT_MS"]

MAX_TIMEOUT_MS = 600_000
MAX_OUTPUT_CHARS = 30_000


def _truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    half = limit // 2
    return text[:half] + "\n...(truncated)...\n" + text[-half:]


def _kill_group(proc: subprocess.Popen) -> None:
    if proc.poll() is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except OSError:
        pass


class RunTerminalCmdTool(ToolPlugin):
    name = "run_terminal_cmd"
    description = (
        "Run a shell command in the working directory.\n"
        "Foreground commands block until they finish or time out and return the "
        "combined stdout/stderr. Set run_in_background for long-running processes "
        "(dev servers, watchers); you get back a shell id to use with bash_output "
        "and kill_bash."
    )
    parameters = {
        "command": string_prop("The command to execute"),
        "run_in_background": boolean_prop("Run the command in the background"),
        "timeout": integer_prop(f"Optional timeout in milliseconds (max {MAX_TIMEOUT_MS})",
                                minimum=0, maximum=MAX_TIMEOUT_MS),
        "description": string_prop("Short description of what the command does"),
    }
    required = ["command"]

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        error = require_string(params, "command")
        if error:
            return ToolResult.fail(error)
        command = params["command"]
        background = bool(params.get("run_in_background") or params.get("is_background"))

        timeout_ms = params.get("timeout")
        if timeout_ms is not None:
            if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) \
                    or not 0 <= timeout_ms <= MAX_TIMEOUT_MS:
                return ToolResult.fail(
                    f"timeout must be an integer between 0 and {MAX_TIMEOUT_MS} milliseconds")
        timeout: Optional[float] = timeout_ms / 1000 if timeout_ms else None

        if background:
            return self._run_background(command, timeout, context)
        return self._run_foreground(command, timeout or context.command_timeout, context)

    def _run_background(self, command: str, timeout: Optional[float],
                        context: ToolContext) -> ToolResult:
        if context.process_manager is None:
            return ToolResult.fail("Background shells are not available")
        shell_id = context.process_manager.spawn(command, timeout=timeout)
        return ToolResult(
            success=True,
            content=f"Command started in background with ID: {shell_id}",
            short_result=f"Started background shell {shell_id}",
        )

    def _run_foreground(self, command: str, timeout: float, context: ToolContext) -> ToolResult:
        _log.debug("Executing command: %s", command[:100])
        try:
            proc = subprocess.Popen(
                ["bash", "-c", command],
                cwd=context.workdir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env={**os.environ, "TERM": "dumb"},
                start_new_session=True,
            )
        except OSError as e:
            _log.warning("Failed to start command %r: %s", command, e)
            return ToolResult.fail(str(ProcessSpawnError(command, str(e))))

        unregister = None
        if context.cancel_token is not None:
            unregister = context.cancel_token.on_cancel(lambda: _kill_group(proc))
        timed_out = False
        try:
            try:
                raw, _ = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                _kill_group(proc)
                raw, _ = proc.communicate()
        finally:
            if unregister is not None:
                unregister()

        output = _truncate((raw or b"").decode("utf-8", errors="replace"))

        if context.cancelled:
            return ToolResult(success=False, content=output, error="Command was aborted",
                              short_result="Aborted by user")
        if timed_out:
            return ToolResult(success=False, content=output,
                              error=f"Command timed out after {timeout:g}s",
                              short_result="Timed out")
        if proc.returncode != 0:
            return ToolResult(
                success=False,
                content=output or f"Command exited with code {proc.returncode}",
                error=f"Command failed with exit code {proc.returncode}",
                short_result=f"Exit code {proc.returncode}",
            )
        lines = output.count("\n") + (1 if output and not output.endswith("\n") else 0)
        return ToolResult(
            success=True,
            content=output if output.strip() else "Command executed successfully (no output)",
            short_result=f"{lines} lines of output" if output.strip() else "Command executed successfully",
        )

    def format_compact_params(self, params: Dict[str, Any]) -> str:
        command = params.get("command") or ""
        if params.get("run_in_background"):
            return f"{command} (background)"
        return command


class BashOutputTool(ToolPlugin):
    name = "bash_output"
    description = (
        "Retrieve output from a background shell. Returns everything captured so "
        "far along with the shell status. Use filter to keep only matching lines."
    )
    parameters = {
        "bash_id": string_prop("The ID of the background shell"),
        "filter": string_prop("Optional regex; only lines matching it are returned"),
    }
    required = ["bash_id"]

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        error = require_string(params, "bash_id")
        if error:
            return ToolResult.fail(error)
        if context.process_manager is None:
            return ToolResult.fail("Background shells are not available")
        bash_id = params["bash_id"]
        output = context.process_manager.get_output(bash_id, params.get("filter") or None)
        if output is None:
            return ToolResult.fail(f"Background shell with ID {bash_id} not found")

        parts = []
        if output.stdout:
            parts.append(output.stdout)
        if output.stderr:
            parts.append(output.stderr)
        content = _truncate("\n".join(parts).strip()) or "No output available"

        status = output.status.value
        exit_part = f"exit code {output.exit_code}" if output.exit_code is not None else "no exit code"
        return ToolResult(
            success=True,
            content=content,
            short_result=f"{bash_id}: {status} ({exit_part})",
        )


class KillBashTool(ToolPlugin):
    name = "kill_bash"
    description = "Kill a running background shell by its ID."
    parameters = {
        "shell_id": string_prop("The ID of the background shell to kill"),
    }
    required = ["shell_id"]

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        error = require_string(params, "shell_id")
        if error:
            return ToolResult.fail(error)
        if context.process_manager is None:
            return ToolResult.fail("Background shells are not available")
        shell_id = params["shell_id"]
        shell = context.process_manager.get(shell_id)
        if shell is None:
            return ToolResult.fail(f"Background shell with ID {shell_id} not found")
        if not shell.is_running:
            return ToolResult.fail(f"Background shell {shell_id} is not running (status: {shell.status.value})")
        if not context.process_manager.kill(shell_id):
            return ToolResult.fail(f"Failed to kill background shell {shell_id}")
        return ToolResult(
            success=True,
            content=f"Background shell {shell_id} killed successfully",
            short_result=f"Killed {shell_id}",
        )
