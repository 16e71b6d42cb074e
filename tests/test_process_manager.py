"""Tests for background shell management (real subprocesses)."""

import time

import pytest

from wave_agent.process_manager import ProcessManager, ShellOutput, ShellStatus


def _wait_until(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


@pytest.fixture
def manager(tmp_path):
    pm = ProcessManager(str(tmp_path), kill_grace=0.5)
    yield pm
    pm.cleanup()


def test_ids_are_sequential(manager):
    first = manager.spawn("true")
    second = manager.spawn("true")
    assert (first, second) == ("bash_1", "bash_2")


def test_kill_running_shell(manager):
    shell_id = manager.spawn("sleep 5")
    assert manager.get(shell_id).is_running

    assert manager.kill(shell_id) is True

    shell = manager.get(shell_id)
    assert shell.status == ShellStatus.KILLED
    assert shell.exit_code is None
    assert shell.end_time is not None
    # The waiter must not flip a killed shell to completed.
    time.sleep(0.5)
    assert manager.get(shell_id).status == ShellStatus.KILLED


def test_natural_exit_completes(manager):
    shell_id = manager.spawn("sleep 0.2")

    assert _wait_until(lambda: not manager.get(shell_id).is_running)

    shell = manager.get(shell_id)
    assert shell.status == ShellStatus.COMPLETED
    assert shell.exit_code == 0
    assert manager.kill(shell_id) is False


def test_nonzero_exit_code(manager):
    shell_id = manager.spawn("exit 3")
    assert _wait_until(lambda: not manager.get(shell_id).is_running)
    assert manager.get(shell_id).exit_code == 3


def test_output_is_captured(manager):
    shell_id = manager.spawn("echo out; echo err 1>&2")
    assert _wait_until(lambda: not manager.get(shell_id).is_running)

    output = manager.get_output(shell_id)
    assert output.stdout == "out\n"
    assert output.stderr == "err\n"
    assert output.status == ShellStatus.COMPLETED


def test_output_filter(manager):
    shell_id = manager.spawn("printf 'apple\\nbanana\\napricot\\n'")
    assert _wait_until(lambda: not manager.get(shell_id).is_running)

    assert manager.get_output(shell_id, filter="^ap").stdout == "apple\napricot"
    # Invalid regex: unfiltered.
    assert manager.get_output(shell_id, filter="(").stdout == "apple\nbanana\napricot\n"


def test_tail_view_keeps_full_buffer(manager):
    shell_id = manager.spawn("seq 1 25")
    assert _wait_until(lambda: not manager.get(shell_id).is_running)

    output = manager.get_output(shell_id)
    assert output.stdout.count("\n") == 25
    assert output.tail().stdout == "\n".join(str(i) for i in range(16, 26))
    assert output.tail(3).stdout == "23\n24\n25"


def test_spawn_failure_yields_completed_shell(tmp_path):
    manager = ProcessManager(str(tmp_path / "does-not-exist"))

    shell_id = manager.spawn("echo hi")

    shell = manager.get(shell_id)
    assert shell.status == ShellStatus.COMPLETED
    assert shell.exit_code != 0
    assert "Process error" in shell.stderr


def test_unknown_shell(manager):
    assert manager.kill("bash_99") is False
    assert manager.get_output("bash_99") is None
    assert manager.remove("bash_99") is False


def test_timeout_kills(manager):
    shell_id = manager.spawn("sleep 5", timeout=0.2)
    assert _wait_until(lambda: not manager.get(shell_id).is_running)
    assert manager.get(shell_id).status == ShellStatus.KILLED


def test_runtime_freezes_when_terminal(manager):
    shell_id = manager.spawn("sleep 5")
    manager.kill(shell_id)
    shell = manager.get(shell_id)
    frozen = shell.runtime
    time.sleep(0.1)
    assert shell.runtime == frozen


def test_remove_and_cleanup(manager):
    a = manager.spawn("sleep 5")
    b = manager.spawn("sleep 5")

    assert manager.remove(a) is True
    assert manager.get(a) is None
    assert manager.running_count() == 1

    manager.cleanup()
    assert manager.list() == []
    assert manager.get(b) is None


def test_change_listener(tmp_path):
    seen = []
    manager = ProcessManager(str(tmp_path), on_change=lambda shells: seen.append(len(shells)))
    shell_id = manager.spawn("echo hi")
    assert _wait_until(lambda: not manager.get(shell_id).is_running)
    assert seen and seen[0] == 1


def test_shell_output_tail_handles_empty():
    output = ShellOutput(stdout="", stderr="", status=ShellStatus.RUNNING)
    assert output.tail().stdout == ""
