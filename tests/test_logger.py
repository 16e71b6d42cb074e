"""Tests for logging setup."""

import logging
from pathlib import Path

import pytest

from wave_agent.logger import get_logger, session_log_path, setup_logger


@pytest.fixture(autouse=True)
def _detach_handlers():
    yield
    setup_logger(log_file=False)


def _flush(logger):
    for handler in logger.handlers:
        handler.flush()


def test_file_records_carry_session_id(tmp_path):
    log_file = tmp_path / "agent.log"
    root = setup_logger(log_file=log_file, session_id="abcdef1234567890")

    get_logger("wave_agent.process_manager").info("Spawned background shell bash_1")
    _flush(root)

    text = log_file.read_text(encoding="utf-8")
    assert "abcdef12 wave_agent.process_manager: Spawned background shell bash_1" in text


def test_console_stays_quiet_unless_verbose(tmp_path):
    root = setup_logger(verbose=False, log_file=tmp_path / "a.log")
    console = [h for h in root.handlers if type(h) is logging.StreamHandler][0]
    assert console.level == logging.WARNING

    root = setup_logger(verbose=True, log_file=False)
    assert len(root.handlers) == 1
    assert root.handlers[0].level == logging.INFO


def test_third_party_loggers_are_quieted():
    setup_logger(log_file=False)
    assert logging.getLogger("mcp").level == logging.WARNING
    assert logging.getLogger("litellm").level == logging.WARNING


def test_session_log_path():
    base = Path("/logs")
    assert session_log_path("0123456789", base) == base / "agent-01234567.log"
    assert session_log_path(None, base) == base / "agent.log"
