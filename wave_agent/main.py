"""
wave-agent: terminal coding assistant.

Command: wave run
"""

import os
import queue
import sys
import threading
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.syntax import Syntax
from rich.table import Table

from . import __version__
from .compression import CompressionController
from .config import CONFIG_DIR, HISTORY_FILE, Config, ModelPreset
from .diff_utils import generate_unified_diff
from .errors import AgentError, SessionNotFoundError
from .llm import LLMAdapter, build_system_prompt
from .logger import get_logger, setup_logger
from .mcp_bridge import STATELESS_NOTE, McpManager
from .messages import Session, ToolCall
from .orchestrator import AgentEvent, ConversationOrchestrator, EventKind
from .process_manager import ProcessManager
from .session import SessionStore
from .tools import ToolContext, ToolExecutor, ToolRegistry

console = Console()
_log = get_logger(__name__)

BANNER = (
    f"[bold #7FA6D9]wave[/bold #7FA6D9] "
    f"[dim]v{__version__} · terminal coding assistant[/dim]"
)
PROJECT_INSTRUCTIONS_FILE = "AGENTS.md"
SLASH_HELP = (
    "/shells · /output <id> · /kill <id> · /mcp · /connect <server> · "
    "/disconnect <server> · /reconnect <server> · /clear · /exit · !<command>"
)


class Runtime:
    """Everything one interactive session needs, wired together."""

    def __init__(self, config: Config, session: Session,
                 store: Optional[SessionStore] = None):
        self.config = config
        workdir = config.project_root or os.getcwd()

        preset = config.get_active_preset()
        self.llm = LLMAdapter(**preset.get_llm_kwargs())
        apply_preset = config.get_apply_preset()
        self.apply_llm = self.llm if apply_preset is preset else LLMAdapter(**apply_preset.get_llm_kwargs())

        self.process_manager = ProcessManager(workdir)
        self.process_manager.add_listener(_shell_notifier())
        self.mcp = McpManager(config.resolve_mcp_config_path())
        self.mcp.load_config()

        self.registry = ToolRegistry(mcp_manager=self.mcp)
        self.executor = ToolExecutor(self.registry, ToolContext(
            workdir=workdir,
            process_manager=self.process_manager,
            apply_edit=self.apply_llm.apply_edit,
            command_timeout=config.command_timeout,
        ))
        self.orchestrator = ConversationOrchestrator(
            llm=self.llm,
            executor=self.executor,
            session=session,
            compression=CompressionController(self.llm.compress_messages, config.token_limit),
            session_store=store,
            max_iterations=config.max_iterations,
            system_prompt=build_system_prompt(workdir, _read_project_instructions(workdir)),
        )

    def shutdown(self):
        self.process_manager.cleanup()
        self.mcp.cleanup()


def _shell_notifier():
    """Listener that announces each background shell once it stops."""
    announced = set()

    def _on_change(shells):
        for shell in shells:
            if shell.is_running or shell.id in announced:
                continue
            announced.add(shell.id)
            exit_text = "" if shell.exit_code is None else f" (exit code {shell.exit_code})"
            console.print(f"[dim]  {shell.id} {shell.status.value}{exit_text}[/dim]")
    return _on_change


def _read_project_instructions(workdir: str) -> Optional[str]:
    path = Path(workdir) / PROJECT_INSTRUCTIONS_FILE
    if not path.is_file():
        return None
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        _log.warning("Cannot read %s: %s", path, e)
        return None


# ── Event rendering ──────────────────────────────────────────

def render_event(event: AgentEvent, executor: ToolExecutor, verbose: bool = False):
    kind = event.kind
    if kind == EventKind.THINKING_STARTED:
        if verbose:
            console.print("[dim]  thinking…[/dim]")
    elif kind == EventKind.THINKING_ENDED:
        # Text that accompanies tool calls; the final answer arrives as FINAL_TEXT.
        pass
    elif kind == EventKind.TOOL_STARTED:
        call = event.tool_call
        params = executor.format_compact_params(call)
        console.print(f"  [#58A6FF]⏺[/#58A6FF] [bold]{call.name}[/bold] [dim]{params}[/dim]")
    elif kind == EventKind.TOOL_FINISHED:
        result = event.result
        summary = result.short_result or (result.content or "").splitlines()[:1]
        if isinstance(summary, list):
            summary = summary[0] if summary else ""
        if result.success:
            console.print(f"    [#57DB9C]⎿[/#57DB9C] [dim]{summary}[/dim]")
            if verbose and result.new_content is not None:
                diff = generate_unified_diff(result.original_content or "", result.new_content,
                                             filename=result.file_path or "file")
                if diff:
                    console.print(Syntax(diff, "diff", theme="ansi_dark", background_color="default"))
        else:
            console.print(f"    [red]⎿ {result.error or summary}[/red]")
    elif kind == EventKind.FINAL_TEXT:
        if event.text:
            console.print()
            console.print(Markdown(event.text))
    elif kind == EventKind.ABORTED:
        console.print("\n[yellow]  Interrupted.[/yellow]")
    elif kind == EventKind.ERROR:
        console.print(f"\n[red]  Error: {event.error}[/red]")


def run_turn(runtime: Runtime, text: str):
    """Consume one turn on a worker thread so Ctrl+C can abort it."""
    events: "queue.Queue" = queue.Queue()
    done = object()

    def _worker():
        try:
            for event in runtime.orchestrator.submit(text):
                events.put(event)
        except AgentError as e:
            events.put(AgentEvent(EventKind.ERROR, error=str(e), fatal=True))
        finally:
            events.put(done)

    worker = threading.Thread(target=_worker, name="agent-turn", daemon=True)
    worker.start()
    while True:
        try:
            event = events.get(timeout=0.1)
        except queue.Empty:
            continue
        except KeyboardInterrupt:
            runtime.orchestrator.abort()
            continue
        if event is done:
            break
        render_event(event, runtime.executor, runtime.config.verbose)
    worker.join()


# ── Slash commands ───────────────────────────────────────────

def _show_shells(runtime: Runtime):
    shells = runtime.process_manager.list()
    if not shells:
        console.print("[dim]  No background shells.[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    for col in ("ID", "Status", "Exit", "Runtime", "Command"):
        table.add_column(col)
    for shell in shells:
        table.add_row(shell.id, shell.status.value,
                      "" if shell.exit_code is None else str(shell.exit_code),
                      f"{shell.runtime:.1f}s", shell.command[:60])
    console.print(table)


def _show_output(runtime: Runtime, shell_id: str):
    output = runtime.process_manager.get_output(shell_id)
    if output is None:
        console.print(f"[red]  Unknown shell: {shell_id}[/red]")
        return
    view = output.tail()
    console.print(f"[bold]{shell_id}[/bold] [dim]{output.status.value}[/dim]")
    if view.stdout:
        console.print(view.stdout, markup=False, highlight=False)
    if view.stderr:
        console.print(view.stderr, style="red", markup=False, highlight=False)
    if not view.stdout and not view.stderr:
        console.print("[dim]  No output available[/dim]")


def _show_mcp(runtime: Runtime):
    servers = runtime.mcp.list_servers()
    if not servers:
        console.print(f"[dim]  No MCP servers configured ({runtime.mcp.config_path}).[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    for col in ("Server", "Status", "Tools", "Error"):
        table.add_column(col)
    for server in servers:
        table.add_row(server.name, server.status.value, str(server.tool_count), server.error or "")
    console.print(table)
    console.print(f"[dim]  {STATELESS_NOTE}[/dim]")


def handle_command(line: str, runtime: Runtime) -> Optional[str]:
    """Run one slash command; returns ``"quit"`` to leave the REPL."""
    parts = line.split(maxsplit=1)
    cmd = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""

    if cmd in ("/exit", "/quit"):
        return "quit"
    if cmd == "/help":
        console.print(f"[dim]  {SLASH_HELP}[/dim]")
    elif cmd == "/shells":
        _show_shells(runtime)
    elif cmd == "/output":
        if not arg:
            console.print("[yellow]  Usage: /output <shell id>[/yellow]")
        else:
            _show_output(runtime, arg)
    elif cmd == "/kill":
        if not arg:
            console.print("[yellow]  Usage: /kill <shell id>[/yellow]")
        elif runtime.process_manager.kill(arg):
            console.print(f"[#57DB9C]  Killed {arg}[/#57DB9C]")
        else:
            console.print(f"[yellow]  {arg} is not running[/yellow]")
    elif cmd == "/mcp":
        _show_mcp(runtime)
    elif cmd in ("/connect", "/disconnect", "/reconnect"):
        if not arg:
            console.print(f"[yellow]  Usage: {cmd} <server>[/yellow]")
        else:
            action = {
                "/connect": runtime.mcp.connect,
                "/disconnect": runtime.mcp.disconnect,
                "/reconnect": runtime.mcp.reconnect,
            }[cmd]
            ok = action(arg)
            server = runtime.mcp.get_server(arg)
            if ok:
                console.print(f"[#57DB9C]  {arg}: {server.status.value}[/#57DB9C]")
            else:
                detail = server.error if server and server.error else "unknown server"
                console.print(f"[red]  {arg}: {detail}[/red]")
    elif cmd == "/clear":
        runtime.orchestrator.clear()
        console.print("[dim]  Conversation cleared.[/dim]")
    else:
        console.print(f"[yellow]  Unknown command: {cmd}[/yellow] [dim]{SLASH_HELP}[/dim]")
    return None


def run_bang_command(runtime: Runtime, command: str):
    result = runtime.executor.run(ToolCall(id="bang", name="run_terminal_cmd",
                                           arguments={"command": command}))
    if result.content:
        console.print(result.content, markup=False, highlight=False)
    if not result.success:
        console.print(f"[red]  {result.error}[/red]")


# ── CLI ──────────────────────────────────────────────────────

@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """wave: terminal coding assistant."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@cli.command()
@click.option("--model", "-m", default=None, help="Model preset name")
@click.option("--project-dir", "-d", default=".", help="Project directory")
@click.option("--continue", "-c", "continue_last", is_flag=True, help="Continue the last session")
@click.option("--restore", "-r", default=None, help="Restore a session by id")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def run(model, project_dir, continue_last, restore, verbose):
    """Start an interactive session."""
    config = Config.load(project_dir)
    if verbose:
        config.verbose = True
    setup_logger(verbose=config.verbose, log_file=False)

    if model:
        if model in config.models:
            config.active_model = model
        else:
            config.models["_cli"] = ModelPreset(name="_cli", provider="openai", model=model)
            config.active_model = "_cli"

    project_root = Path(config.project_root).resolve()
    if not project_root.is_dir():
        console.print(f"[red]Error: '{project_dir}' is not a valid directory.[/red]")
        sys.exit(1)

    store = SessionStore()
    session = None
    try:
        if restore:
            session = store.load(restore)
        elif continue_last:
            session = store.latest(str(project_root))
    except SessionNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    if session is None:
        session = Session(workdir=str(project_root))
    setup_logger(verbose=config.verbose, session_id=session.id)
    _log.info("Session %s in %s", session.id, project_root)

    try:
        runtime = Runtime(config, session, store)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    console.print(BANNER)
    console.print(f"[dim]  model {config.active_model} · {project_root} · session {session.id[:8]}[/dim]")
    if session.messages:
        console.print(f"[dim]  restored {len(session.messages)} messages[/dim]")
    if runtime.mcp.list_servers():
        with console.status("[dim]Connecting MCP servers…[/dim]", spinner="dots"):
            results = runtime.mcp.connect_all()
        connected = sum(1 for ok in results.values() if ok)
        console.print(f"[dim]  MCP: {connected}/{len(results)} servers connected (/mcp for details)[/dim]")

    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory

    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    prompt = PromptSession(history=FileHistory(str(HISTORY_FILE)), multiline=False)

    try:
        while True:
            try:
                user_input = prompt.prompt("> ").strip()
            except EOFError:
                console.print("\n[dim]Goodbye![/dim]")
                break
            except KeyboardInterrupt:
                continue

            if not user_input:
                continue
            if user_input.startswith("/"):
                if handle_command(user_input, runtime) == "quit":
                    break
                continue
            if user_input.startswith("!"):
                run_bang_command(runtime, user_input[1:].strip())
                continue

            run_turn(runtime, user_input)
    finally:
        runtime.shutdown()


@cli.command()
@click.option("--limit", "-n", default=10, help="Number of sessions to show")
def sessions(limit):
    """List saved sessions."""
    rows = SessionStore().list(limit=limit)
    if not rows:
        console.print("[dim]No saved sessions.[/dim]")
        return
    table = Table(show_header=True, header_style="bold")
    for col in ("ID", "Updated", "Messages", "Tokens", "Workdir"):
        table.add_column(col)
    for row in rows:
        table.add_row(row["id"][:12], row["updated_at"], str(row["messages"]),
                      str(row["total_tokens"]), row["workdir"] or "")
    console.print(table)


@cli.command("config")
@click.option("--project-dir", "-d", default=".")
def config_cmd(project_dir):
    """Show configuration."""
    cfg = Config.load(project_dir)
    console.print(f"[bold]Config:[/bold] {cfg._config_source}")
    console.print(f"  token-limit {cfg.token_limit} · max-iterations {cfg.max_iterations} · "
                  f"command-timeout {cfg.command_timeout}s · mcp-config {cfg.resolve_mcp_config_path()}")
    for m in cfg.list_models():
        marker = "●" if m["active"] else " "
        console.print(f"  {marker} [bold]{m['name']}[/bold] [dim]{m['model']} {m['description']}[/dim]")


if __name__ == "__main__":
    cli()
