"""Diff utilities for file edit results."""

import difflib
from typing import List, Tuple

from .messages import DiffChunk

__all__ = ["generate_unified_diff", "diff_lines", "count_line_changes", "count_lines"]


def _split_lines(text: str) -> List[str]:
    lines = text.splitlines(keepends=True)
    if lines and not lines[-1].endswith("\n"):
        lines[-1] += "\n"
    return lines


def generate_unified_diff(
    old_content: str,
    new_content: str,
    filename: str = "file",
    context_lines: int = 3
) -> str:
    """Generate a unified diff between old and new content."""
    diff = difflib.unified_diff(
        _split_lines(old_content),
        _split_lines(new_content),
        fromfile=f"a/{filename}",
        tofile=f"b/{filename}",
        n=context_lines
    )
    return "".join(diff)


def diff_lines(old_content: str, new_content: str) -> List[DiffChunk]:
    """Line-level structural diff as runs of unchanged, removed and added lines.

    A replaced region yields a removed chunk followed by an added chunk.
    """
    old_lines = _split_lines(old_content)
    new_lines = _split_lines(new_content)
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)

    chunks: List[DiffChunk] = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            chunks.append(DiffChunk("".join(old_lines[i1:i2]), i2 - i1))
            continue
        if tag in ("replace", "delete"):
            chunks.append(DiffChunk("".join(old_lines[i1:i2]), i2 - i1, removed=True))
        if tag in ("replace", "insert"):
            chunks.append(DiffChunk("".join(new_lines[j1:j2]), j2 - j1, added=True))
    return chunks


def count_line_changes(chunks: List[DiffChunk]) -> Tuple[int, int]:
    """Return (lines_added, lines_removed) for a structural diff."""
    added = sum(c.count for c in chunks if c.added)
    removed = sum(c.count for c in chunks if c.removed)
    return added, removed


def count_lines(text: str) -> int:
    """Line count as shown to the user; an empty file has one (empty) line."""
    return len(text.split("\n"))
