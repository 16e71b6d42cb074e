"""Logging for wave-agent: quiet console, per-session file log."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__all__ = ["setup_logger", "get_logger", "session_log_path", "LOG_DIR"]

PACKAGE_LOGGER = "wave_agent"
LOG_DIR = Path("~/.wave-agent/logs").expanduser()
CONSOLE_FORMAT = "[%(levelname).1s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(session_id)s %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024  # 5MB
LOG_BACKUP_COUNT = 3

# Chatty third-party loggers: model client, HTTP, MCP SDK and its event loop.
NOISY_LOGGERS = ("litellm", "LiteLLM", "httpx", "mcp", "asyncio")


class _SessionFilter(logging.Filter):
    """Stamps every record with the conversation session it belongs to."""

    def __init__(self, session_id: Optional[str]):
        super().__init__()
        self.session_id = session_id[:8] if session_id else "-"

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = self.session_id
        return True


def session_log_path(session_id: Optional[str] = None, log_dir: Path = LOG_DIR) -> Path:
    """``agent-<id8>.log`` for a session, ``agent.log`` without one."""
    if not session_id:
        return log_dir / "agent.log"
    return log_dir / f"agent-{session_id[:8]}.log"


def setup_logger(
    verbose: bool = False,
    log_file: Union[str, Path, bool, None] = None,
    session_id: Optional[str] = None,
) -> logging.Logger:
    """Configure the ``wave_agent`` logger that every module logger inherits from.

    Args:
        verbose: ``True`` shows INFO on the console; otherwise WARNING and up.
            The file log always records INFO.
        log_file: File logging target.
            - ``None`` or ``True``: :func:`session_log_path` for ``session_id``
            - ``False``: disable file logging
            - ``str``/``Path``: use a custom log file path
        session_id: Conversation session; tags file records and names the file.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.INFO)
    logger.propagate = False
    session_filter = _SessionFilter(session_id)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    log_path = _resolve_log_path(log_file, session_id)
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.addFilter(session_filter)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name without changing its configuration."""
    return logging.getLogger(name)


def _resolve_log_path(log_file: Union[str, Path, bool, None],
                      session_id: Optional[str]) -> Path | None:
    if log_file is False:
        return None
    if log_file is None or log_file is True:
        return session_log_path(session_id)
    return Path(log_file).expanduser()
