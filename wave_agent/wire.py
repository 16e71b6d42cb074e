"""Conversion of session messages to the OpenAI chat wire format used by litellm."""

import base64
import json
import mimetypes
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .logger import get_logger
from .messages import (
    CompressBlock, ImageBlock, Message, Role, TextBlock, ToolCallBlock,
)

_log = get_logger(__name__)

__all__ = ["to_wire_format", "COMPRESS_MARKER", "image_to_data_url", "strip_ansi"]

COMPRESS_MARKER = "[Compressed Message Summary]"

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text or "")


def image_to_data_url(path_or_url: str) -> str:
    """Return a base64 data URL for a local image path; URLs pass through."""
    if path_or_url.startswith(("data:image/", "http://", "https://")):
        return path_or_url
    path = Path(path_or_url).expanduser()
    media_type = mimetypes.guess_type(path.name)[0] or "image/png"
    data = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{media_type};base64,{data}"


def _history_start(messages: List[Message]) -> int:
    """Index of the most recent compress message; older history is represented by it."""
    for idx in range(len(messages) - 1, -1, -1):
        msg = messages[idx]
        if msg.role == Role.ASSISTANT and msg.compress_block is not None:
            return idx
    return 0


def _user_content(msg: Message) -> Any:
    parts: List[Dict[str, Any]] = []
    for block in msg.blocks:
        if isinstance(block, TextBlock) and block.content:
            parts.append({"type": "text", "text": block.content})
        elif isinstance(block, ImageBlock):
            for url in block.urls:
                try:
                    data_url = image_to_data_url(url)
                except OSError as e:
                    _log.warning("Skipping unreadable image %s: %s", url, e)
                    continue
                parts.append({"type": "image_url",
                              "image_url": {"url": data_url, "detail": "auto"}})
    if len(parts) == 1 and parts[0]["type"] == "text":
        return parts[0]["text"]
    return parts


def _tool_call_payload(block: ToolCallBlock) -> Dict[str, Any]:
    return {
        "id": block.id,
        "type": "function",
        "function": {"name": block.name, "arguments": json.dumps(block.arguments or {})},
    }


def to_wire_format(messages: List[Message]) -> List[Dict[str, Any]]:
    """Render messages for the model.

    A compress block becomes one assistant text message prefixed with
    ``COMPRESS_MARKER``; messages before it are not sent. Tool calls without a
    result and tool results without a call are dropped so the provider always
    sees complete pairs.
    """
    start = _history_start(messages)
    window = messages[start:]

    call_ids: Set[str] = set()
    result_ids: Set[str] = set()
    for msg in window:
        if msg.role == Role.ASSISTANT:
            call_ids.update(b.id for b in msg.tool_calls)
        elif msg.role == Role.TOOL and msg.tool_result is not None:
            result_ids.add(msg.tool_result.tool_call_id)
    paired = call_ids & result_ids

    wire: List[Dict[str, Any]] = []
    for msg in window:
        if msg.role == Role.ASSISTANT:
            compress: Optional[CompressBlock] = msg.compress_block
            if compress is not None:
                wire.append({"role": "assistant",
                             "content": f"{COMPRESS_MARKER} {compress.summary}"})
                continue
            content = msg.text
            tool_calls = [_tool_call_payload(b) for b in msg.tool_calls if b.id in paired]
            if not content and not tool_calls:
                continue
            entry: Dict[str, Any] = {"role": "assistant", "content": content}
            if tool_calls:
                entry["tool_calls"] = tool_calls
            wire.append(entry)
        elif msg.role == Role.TOOL:
            result = msg.tool_result
            if result is None or result.tool_call_id not in paired:
                continue
            wire.append({"role": "tool", "tool_call_id": result.tool_call_id,
                         "content": strip_ansi(result.content)})
        elif msg.role == Role.USER:
            content = _user_content(msg)
            if content:
                wire.append({"role": "user", "content": content})
        elif msg.role == Role.SYSTEM:
            if msg.text:
                wire.append({"role": "system", "content": msg.text})
    return wire
