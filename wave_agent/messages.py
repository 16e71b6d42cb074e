"""Conversation data model: messages, blocks, tool calls/results and sessions."""

import uuid
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Union

__all__ = [
    "Role", "TextBlock", "ToolCallBlock", "ToolResultBlock", "CompressBlock",
    "ImageBlock", "Block", "Message", "Session", "ToolCall", "ToolResult",
    "DiffChunk", "Usage", "block_from_dict",
]


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"
    SYSTEM = "system"


# ── Blocks ───────────────────────────────────────────

@dataclass
class TextBlock:
    content: str
    type: str = field(default="text", init=False)


@dataclass
class ToolCallBlock:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    type: str = field(default="tool_call", init=False)


@dataclass
class ToolResultBlock:
    tool_call_id: str
    success: bool
    content: str
    error: Optional[str] = None
    short_result: Optional[str] = None
    diff: Optional[List[Dict[str, Any]]] = None
    type: str = field(default="tool_result", init=False)


@dataclass
class CompressBlock:
    summary: str
    compressed_message_count: int
    type: str = field(default="compress", init=False)


@dataclass
class ImageBlock:
    urls: List[str] = field(default_factory=list)
    type: str = field(default="image", init=False)


Block = Union[TextBlock, ToolCallBlock, ToolResultBlock, CompressBlock, ImageBlock]

_BLOCK_TYPES = {
    "text": TextBlock,
    "tool_call": ToolCallBlock,
    "tool_result": ToolResultBlock,
    "compress": CompressBlock,
    "image": ImageBlock,
}


def block_from_dict(data: Dict[str, Any]) -> Block:
    kind = data.get("type")
    cls = _BLOCK_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown block type: {kind!r}")
    kwargs = {k: v for k, v in data.items() if k != "type"}
    return cls(**kwargs)


# ── Messages ─────────────────────────────────────────

@dataclass
class Message:
    role: Role
    blocks: List[Block] = field(default_factory=list)

    @classmethod
    def user(cls, text: str, images: Optional[List[str]] = None) -> "Message":
        blocks: List[Block] = []
        if text:
            blocks.append(TextBlock(text))
        if images:
            blocks.append(ImageBlock(list(images)))
        return cls(Role.USER, blocks)

    @classmethod
    def tool(cls, result_block: ToolResultBlock) -> "Message":
        return cls(Role.TOOL, [result_block])

    @property
    def text(self) -> str:
        return "\n".join(b.content for b in self.blocks if isinstance(b, TextBlock) and b.content)

    @property
    def tool_calls(self) -> List[ToolCallBlock]:
        return [b for b in self.blocks if isinstance(b, ToolCallBlock)]

    @property
    def tool_result(self) -> Optional[ToolResultBlock]:
        for b in self.blocks:
            if isinstance(b, ToolResultBlock):
                return b
        return None

    @property
    def compress_block(self) -> Optional[CompressBlock]:
        for b in self.blocks:
            if isinstance(b, CompressBlock):
                return b
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "blocks": [asdict(b) for b in self.blocks]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(Role(data["role"]), [block_from_dict(b) for b in data.get("blocks", [])])


# ── Tool calls and results ───────────────────────────

@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    # Raw argument text when the model sent something that is not a JSON object.
    raw_arguments: Optional[str] = None

    @property
    def arguments_valid(self) -> bool:
        return self.raw_arguments is None


@dataclass
class DiffChunk:
    """One run of unchanged, added or removed lines."""
    value: str
    count: int
    added: bool = False
    removed: bool = False


@dataclass(frozen=True)
class ToolResult:
    success: bool
    content: str = ""
    error: Optional[str] = None
    short_result: Optional[str] = None
    diff_result: Optional[List[DiffChunk]] = None
    file_path: Optional[str] = None
    original_content: Optional[str] = None
    new_content: Optional[str] = None

    @classmethod
    def fail(cls, error: str, content: str = "") -> "ToolResult":
        return cls(success=False, content=content, error=error)

    @classmethod
    def aborted(cls) -> "ToolResult":
        return cls(success=False, content="", error="aborted",
                   short_result="Aborted by user")

    def to_block(self, tool_call_id: str) -> ToolResultBlock:
        content = self.content
        if not content and self.error:
            content = f"Error: {self.error}"
        diff = [asdict(c) for c in self.diff_result] if self.diff_result else None
        return ToolResultBlock(
            tool_call_id=tool_call_id,
            success=self.success,
            content=content,
            error=self.error,
            short_result=self.short_result,
            diff=diff,
        )


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Usage"]:
        if not data:
            return None
        return cls(
            prompt_tokens=int(data.get("prompt_tokens") or 0),
            completion_tokens=int(data.get("completion_tokens") or 0),
            total_tokens=int(data.get("total_tokens") or 0),
        )


# ── Session ──────────────────────────────────────────

@dataclass
class Session:
    workdir: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    messages: List[Message] = field(default_factory=list)
    input_history: List[str] = field(default_factory=list)
    total_tokens: int = 0

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def add_to_input_history(self, text: str) -> None:
        if text and (not self.input_history or self.input_history[-1] != text):
            self.input_history.append(text)

    def clear(self) -> None:
        self.messages.clear()
        self.total_tokens = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workdir": self.workdir,
            "total_tokens": self.total_tokens,
            "input_history": list(self.input_history),
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            workdir=data.get("workdir", "."),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            input_history=list(data.get("input_history", [])),
            total_tokens=int(data.get("total_tokens", 0)),
        )
