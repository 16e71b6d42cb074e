"""Tests for token-driven history compression."""

import copy

from conftest import make_session

from wave_agent.compression import COMPRESS_WINDOW, CompressionController, select_compression_window
from wave_agent.errors import AbortError, CompressionError
from wave_agent.messages import Message, Role, TextBlock, Usage
from wave_agent.wire import COMPRESS_MARKER, to_wire_format


class RecordingSummarizer:
    def __init__(self, result="the summary"):
        self.result = result
        self.calls = []

    def __call__(self, wire_messages, cancel_token=None):
        self.calls.append(wire_messages)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class TestWindowSelection:

    def test_window_skips_last_message(self):
        assert select_compression_window(16) == (9, 15)

    def test_too_short(self):
        assert select_compression_window(6) is None
        assert select_compression_window(3) is None

    def test_minimum_length(self):
        assert select_compression_window(7) == (0, 6)


class TestTrigger:

    def test_below_token_limit_never_summarises(self):
        summarizer = RecordingSummarizer()
        controller = CompressionController(summarizer, token_limit=64000)
        session = make_session(8)

        assert controller.maybe_compress(session, Usage(total_tokens=64000)) is False
        assert summarizer.calls == []
        assert len(session.messages) == 16

    def test_short_history_never_summarises(self):
        summarizer = RecordingSummarizer()
        controller = CompressionController(summarizer, token_limit=64000)
        session = make_session(3)

        assert controller.maybe_compress(session, Usage(total_tokens=90000)) is False
        assert summarizer.calls == []

    def test_missing_usage(self):
        summarizer = RecordingSummarizer()
        controller = CompressionController(summarizer)
        assert controller.maybe_compress(make_session(8), None) is False
        assert summarizer.calls == []


class TestCompress:

    def test_replaces_window_with_one_compress_message(self):
        summarizer = RecordingSummarizer("older work summarised")
        controller = CompressionController(summarizer, token_limit=64000)
        session = make_session(8)
        original = list(session.messages)

        assert controller.maybe_compress(session, Usage(total_tokens=70000)) is True

        assert len(summarizer.calls) == 1
        assert len(summarizer.calls[0]) == COMPRESS_WINDOW
        assert summarizer.calls[0][0]["content"] == "answer 4"
        assert len(session.messages) == 16 - 5
        assert session.messages[:9] == original[:9]
        block = session.messages[9].compress_block
        assert session.messages[9].role == Role.ASSISTANT
        assert block.summary == "older work summarised"
        assert block.compressed_message_count == 6
        assert session.messages[10] is original[15]

    def test_wire_format_starts_at_summary(self):
        controller = CompressionController(RecordingSummarizer("S"), token_limit=10)
        session = make_session(8)
        controller.maybe_compress(session, Usage(total_tokens=11))

        wire = to_wire_format(session.messages)
        assert wire[0] == {"role": "assistant", "content": f"{COMPRESS_MARKER} S"}
        assert wire[1] == {"role": "assistant", "content": "answer 7"}

    def test_summariser_failure_leaves_session_unchanged(self):
        controller = CompressionController(RecordingSummarizer(CompressionError("boom")), token_limit=10)
        session = make_session(8)
        before = copy.deepcopy(session.to_dict())

        assert controller.maybe_compress(session, Usage(total_tokens=99999)) is False
        assert session.to_dict() == before

    def test_abort_during_summary_is_absorbed(self):
        controller = CompressionController(RecordingSummarizer(AbortError()), token_limit=10)
        session = make_session(8)

        assert controller.maybe_compress(session, Usage(total_tokens=99999)) is False
        assert len(session.messages) == 16

    def test_empty_summary_is_a_failure(self):
        controller = CompressionController(RecordingSummarizer("   "), token_limit=10)
        session = make_session(8)

        assert controller.maybe_compress(session, Usage(total_tokens=99999)) is False
        assert len(session.messages) == 16

    def test_retry_after_failure(self):
        summarizer = RecordingSummarizer(RuntimeError("offline"))
        controller = CompressionController(summarizer, token_limit=10)
        session = make_session(8)
        controller.maybe_compress(session, Usage(total_tokens=99999))

        summarizer.result = "second try"
        session.append(Message(Role.USER, [TextBlock("next")]))
        assert controller.maybe_compress(session, Usage(total_tokens=99999)) is True
        assert len(session.messages) == 17 - 5
