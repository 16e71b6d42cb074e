"""Token-driven history compression."""

from typing import Callable, Dict, List, Any, Optional

from .cancellation import CancellationToken
from .config import DEFAULT_TOKEN_LIMIT
from .errors import AbortError, CompressionError
from .logger import get_logger
from .messages import CompressBlock, Message, Role, Session, Usage
from .wire import to_wire_format

_log = get_logger(__name__)

__all__ = ["CompressionController", "COMPRESS_WINDOW", "select_compression_window"]

# Messages summarised per compression; the newest message is never included.
COMPRESS_WINDOW = 6

Summarizer = Callable[[List[Dict[str, Any]], Optional[CancellationToken]], str]


def select_compression_window(length: int, window: int = COMPRESS_WINDOW) -> Optional[tuple[int, int]]:
    """Return ``(start, end)`` slice bounds of the window, or None when too short.

    The window is the ``window`` messages that end one position before the
    last message: ``messages[length-window-1 : length-1]``.
    """
    if length <= window:
        return None
    end = length - 1
    return end - window, end


class CompressionController:
    """Replaces a window of older messages with one summary once usage crosses a limit."""

    def __init__(self, summarizer: Summarizer, token_limit: int = DEFAULT_TOKEN_LIMIT,
                 window: int = COMPRESS_WINDOW):
        self.summarizer = summarizer
        self.token_limit = token_limit
        self.window = window

    def should_compress(self, session: Session, usage: Optional[Usage]) -> bool:
        if usage is None:
            return False
        return usage.total_tokens > self.token_limit and len(session.messages) > self.window

    def maybe_compress(self, session: Session, usage: Optional[Usage],
                       cancel_token: Optional[CancellationToken] = None) -> bool:
        """Summarise the window when both thresholds are exceeded.

        Returns True when the session was rewritten. Summariser failures are
        logged and leave the session untouched.
        """
        if not self.should_compress(session, usage):
            return False

        _log.info("Token usage %d exceeded %d, compressing messages...",
                  usage.total_tokens, self.token_limit)
        bounds = select_compression_window(len(session.messages), self.window)
        if bounds is None:
            return False
        start, end = bounds
        window_messages = session.messages[start:end]

        try:
            summary = self.summarizer(to_wire_format(window_messages), cancel_token)
        except AbortError:
            _log.info("Compression aborted by user")
            return False
        except CompressionError as e:
            _log.error("Failed to compress messages: %s", e)
            return False
        except Exception as e:
            _log.error("Failed to compress messages: %s: %s", type(e).__name__, e)
            return False

        if not summary or not summary.strip():
            _log.error("Failed to compress messages: empty summary")
            return False

        replacement = Message(Role.ASSISTANT, [
            CompressBlock(summary=summary.strip(), compressed_message_count=len(window_messages)),
        ])
        session.messages[start:end] = [replacement]
        _log.info("Successfully compressed %d messages", len(window_messages))
        return True
