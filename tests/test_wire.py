"""Tests for wire-format conversion and message serialisation."""

import json

from wave_agent.messages import (
    CompressBlock, ImageBlock, Message, Role, TextBlock, ToolCallBlock, ToolResult,
)
from wave_agent.wire import COMPRESS_MARKER, strip_ansi, to_wire_format


def _call_message(*ids):
    return Message(Role.ASSISTANT, [TextBlock("let me look")] + [
        ToolCallBlock(id=i, name="read_file", arguments={"target_file": "a.py"}) for i in ids
    ])


def _result_message(call_id, content="ok"):
    return Message.tool(ToolResult(success=True, content=content).to_block(call_id))


def test_tool_round_trip_shape():
    messages = [Message.user("read it"), _call_message("c1"), _result_message("c1", "\x1b[31mred\x1b[0m")]

    wire = to_wire_format(messages)

    assert wire[0] == {"role": "user", "content": "read it"}
    assert wire[1]["role"] == "assistant"
    assert wire[1]["content"] == "let me look"
    call = wire[1]["tool_calls"][0]
    assert call["id"] == "c1"
    assert call["function"]["name"] == "read_file"
    assert json.loads(call["function"]["arguments"]) == {"target_file": "a.py"}
    assert wire[2] == {"role": "tool", "tool_call_id": "c1", "content": "red"}


def test_unpaired_calls_and_results_are_dropped():
    messages = [_result_message("orphan"), Message.user("hi"), _call_message("c1", "c2"),
                _result_message("c1")]

    wire = to_wire_format(messages)

    assert [w["role"] for w in wire] == ["user", "assistant", "tool"]
    assert [c["id"] for c in wire[1]["tool_calls"]] == ["c1"]


def test_compress_block_rendered_as_single_assistant_turn():
    messages = [
        Message.user("very old"),
        Message(Role.ASSISTANT, [CompressBlock(summary="we fixed the parser", compressed_message_count=6)]),
        Message.user("continue"),
    ]

    wire = to_wire_format(messages)

    assert wire == [
        {"role": "assistant", "content": f"{COMPRESS_MARKER} we fixed the parser"},
        {"role": "user", "content": "continue"},
    ]


def test_failed_result_without_content_reports_error():
    block = ToolResult.fail("boom").to_block("x")
    assert block.content == "Error: boom"
    assert block.success is False


def test_user_images(tmp_path):
    image = tmp_path / "shot.png"
    image.write_bytes(b"\x89PNG fake")
    wire = to_wire_format([Message.user("what is this", images=[str(image)])])

    content = wire[0]["content"]
    assert content[0] == {"type": "text", "text": "what is this"}
    assert content[1]["type"] == "image_url"
    assert content[1]["image_url"]["url"].startswith("data:image/png;base64,")


def test_message_dict_round_trip():
    original = Message(Role.ASSISTANT, [
        TextBlock("hi"),
        ToolCallBlock(id="1", name="grep_search", arguments={"query": "x"}),
        ImageBlock(["a.png"]),
    ])
    assert Message.from_dict(original.to_dict()) == original


def test_strip_ansi():
    assert strip_ansi("\x1b[1;32mgreen\x1b[0m") == "green"
