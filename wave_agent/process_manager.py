"""Background shell processes with a lifecycle independent of the conversation."""

import codecs
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from .logger import get_logger

_log = get_logger(__name__)

__all__ = ["ProcessManager", "BackgroundShell", "ShellStatus", "ShellOutput", "DEFAULT_TAIL_LINES"]

DEFAULT_TAIL_LINES = 10
_READ_CHUNK = 4096
_READER_JOIN_TIMEOUT = 1.0


class ShellStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    KILLED = "killed"


_TERMINAL_STATES = frozenset({ShellStatus.COMPLETED, ShellStatus.KILLED})


def _tail(text: str, lines: int) -> str:
    if lines <= 0 or not text:
        return ""
    parts = text.rstrip("\n").split("\n")
    return "\n".join(parts[-lines:])


@dataclass
class BackgroundShell:
    """One background command. Only ProcessManager mutates it."""
    id: str
    command: str
    start_time: float = field(default_factory=time.time)
    status: ShellStatus = ShellStatus.RUNNING
    end_time: Optional[float] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    pid: Optional[int] = None
    process: Optional[subprocess.Popen] = field(default=None, repr=False, compare=False)

    @property
    def is_running(self) -> bool:
        return self.status == ShellStatus.RUNNING

    @property
    def runtime(self) -> float:
        """Seconds since start while running, total duration once terminal."""
        end = self.end_time if self.end_time is not None else time.time()
        return max(0.0, end - self.start_time)


@dataclass
class ShellOutput:
    stdout: str
    stderr: str
    status: ShellStatus
    exit_code: Optional[int] = None

    def tail(self, lines: int = DEFAULT_TAIL_LINES) -> "ShellOutput":
        """Display view keeping only the last ``lines`` lines of each stream."""
        return ShellOutput(_tail(self.stdout, lines), _tail(self.stderr, lines),
                           self.status, self.exit_code)


class ProcessManager:
    """Spawn, track and terminate background shell processes.

    Shells live in a table keyed by ``bash_<n>`` ids. Each shell moves from
    RUNNING to exactly one of COMPLETED (process exited on its own) or KILLED
    (explicit kill or timeout); terminal states are final. Output is collected
    by one reader thread per stream and a waiter thread records the exit.
    """

    def __init__(self, workdir: str = ".", on_change: Optional[Callable[[List[BackgroundShell]], None]] = None,
                 kill_grace: float = 1.0):
        self.workdir = str(workdir)
        self.kill_grace = kill_grace
        self._shells: Dict[str, BackgroundShell] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._next_id = 1
        self._lock = threading.RLock()
        self._listeners: List[Callable[[List[BackgroundShell]], None]] = []
        if on_change:
            self._listeners.append(on_change)

    # ── Listeners ─────────────────────────────────────────────

    def add_listener(self, callback: Callable[[List[BackgroundShell]], None]) -> None:
        with self._lock:
            self._listeners.append(callback)

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
            shells = list(self._shells.values())
        for callback in listeners:
            try:
                callback(shells)
            except Exception as e:
                _log.warning("Shell listener failed: %s", e)

    # ── State transitions ────────────────────────────────────

    def _finish(self, shell: BackgroundShell, status: ShellStatus,
                exit_code: Optional[int] = None) -> bool:
        """Move a running shell to a terminal state. Caller holds the lock."""
        if shell.status in _TERMINAL_STATES:
            return False
        shell.status = status
        shell.end_time = time.time()
        if status == ShellStatus.COMPLETED:
            shell.exit_code = exit_code
        timer = self._timers.pop(shell.id, None)
        if timer is not None:
            timer.cancel()
        return True

    # ── Public API ───────────────────────────────────────────

    def spawn(self, command: str, timeout: Optional[float] = None) -> str:
        """Start ``command`` in the background and return its shell id.

        Never raises: a command that cannot be started yields a shell that is
        already COMPLETED with a non-zero exit code and the error in stderr.
        ``timeout`` (seconds) kills the shell if it is still running.
        """
        with self._lock:
            shell_id = f"bash_{self._next_id}"
            self._next_id += 1
            shell = BackgroundShell(id=shell_id, command=command)
            self._shells[shell_id] = shell

        try:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=self.workdir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env={**os.environ, "TERM": "dumb"},
                start_new_session=True,
            )
        except OSError as e:
            _log.warning("Failed to spawn background command %r: %s", command, e)
            with self._lock:
                shell.stderr += f"Process error: {e}"
                self._finish(shell, ShellStatus.COMPLETED, 127 if isinstance(e, FileNotFoundError) else 1)
            self._notify()
            return shell_id

        with self._lock:
            shell.process = proc
            shell.pid = proc.pid
            if timeout and timeout > 0:
                timer = threading.Timer(timeout, self._on_timeout, args=(shell_id,))
                timer.daemon = True
                self._timers[shell_id] = timer
                timer.start()

        readers = [
            threading.Thread(target=self._read_stream, args=(shell, proc.stdout, "stdout"),
                             name=f"{shell_id}-stdout", daemon=True),
            threading.Thread(target=self._read_stream, args=(shell, proc.stderr, "stderr"),
                             name=f"{shell_id}-stderr", daemon=True),
        ]
        for reader in readers:
            reader.start()
        threading.Thread(target=self._wait_for_exit, args=(shell, proc, readers),
                         name=f"{shell_id}-wait", daemon=True).start()

        _log.info("Started background shell %s: %s", shell_id, command[:100])
        self._notify()
        return shell_id

    def _read_stream(self, shell: BackgroundShell, stream, attr: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            for chunk in iter(lambda: stream.read1(_READ_CHUNK), b""):
                text = decoder.decode(chunk)
                if text:
                    with self._lock:
                        setattr(shell, attr, getattr(shell, attr) + text)
                    self._notify()
            tail = decoder.decode(b"", final=True)
            if tail:
                with self._lock:
                    setattr(shell, attr, getattr(shell, attr) + tail)
        except (OSError, ValueError):
            # Pipe closed underneath us after a kill.
            pass
        finally:
            stream.close()

    def _wait_for_exit(self, shell: BackgroundShell, proc: subprocess.Popen,
                       readers: List[threading.Thread]) -> None:
        code = proc.wait()
        for reader in readers:
            reader.join(_READER_JOIN_TIMEOUT)
        with self._lock:
            changed = self._finish(shell, ShellStatus.COMPLETED, code)
        if changed:
            _log.info("Background shell %s exited with code %s", shell.id, code)
        self._notify()

    def _on_timeout(self, shell_id: str) -> None:
        if self.kill(shell_id):
            _log.info("Background shell %s killed after timeout", shell_id)

    def kill(self, shell_id: str) -> bool:
        """Terminate a running shell. Returns False for unknown or finished shells."""
        with self._lock:
            shell = self._shells.get(shell_id)
            if shell is None or shell.status in _TERMINAL_STATES:
                return False
            proc = shell.process
            if proc is None:
                return False
            code = proc.poll()
            if code is not None:
                # Exited before the waiter thread recorded it.
                self._finish(shell, ShellStatus.COMPLETED, code)
                killed = False
            else:
                self._finish(shell, ShellStatus.KILLED)
                killed = True

        if killed:
            self._terminate(proc)
            _log.info("Killed background shell %s", shell_id)
        self._notify()
        return killed

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the process group, escalating to SIGKILL after the grace period."""
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, signal.SIGTERM)
            else:
                proc.terminate()
        except ProcessLookupError:
            return
        except OSError as e:
            _log.warning("Failed to signal process group %s: %s", proc.pid, e)
            try:
                proc.terminate()
            except OSError:
                return

        def _force_kill():
            if proc.poll() is not None:
                return
            try:
                if hasattr(os, "killpg"):
                    os.killpg(proc.pid, signal.SIGKILL)
                else:
                    proc.kill()
            except OSError as e:
                _log.error("Failed to force kill process %s: %s", proc.pid, e)

        timer = threading.Timer(self.kill_grace, _force_kill)
        timer.daemon = True
        timer.start()

    def get(self, shell_id: str) -> Optional[BackgroundShell]:
        with self._lock:
            return self._shells.get(shell_id)

    def list(self) -> List[BackgroundShell]:
        with self._lock:
            return list(self._shells.values())

    def get_output(self, shell_id: str, filter: Optional[str] = None) -> Optional[ShellOutput]:
        """Full output of a shell, optionally keeping only lines matching ``filter``.

        An invalid ``filter`` regex is ignored.
        """
        with self._lock:
            shell = self._shells.get(shell_id)
            if shell is None:
                return None
            stdout, stderr = shell.stdout, shell.stderr
            status, exit_code = shell.status, shell.exit_code

        if filter:
            try:
                pattern = re.compile(filter)
            except re.error as e:
                _log.warning("Invalid output filter %r: %s", filter, e)
            else:
                stdout = "\n".join(l for l in stdout.split("\n") if pattern.search(l))
                stderr = "\n".join(l for l in stderr.split("\n") if pattern.search(l))

        return ShellOutput(stdout, stderr, status, exit_code)

    def remove(self, shell_id: str) -> bool:
        """Evict a shell from the table, killing it first if still running."""
        with self._lock:
            if shell_id not in self._shells:
                return False
        self.kill(shell_id)
        with self._lock:
            self._shells.pop(shell_id, None)
        self._notify()
        return True

    def running_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._shells.values() if s.is_running)

    def cleanup(self) -> None:
        """Kill all running shells and clear the table (shutdown)."""
        for shell in self.list():
            if shell.is_running:
                self.kill(shell.id)
        with self._lock:
            self._shells.clear()
        self._notify()
