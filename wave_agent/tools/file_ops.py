"""File tools: read, edit (create / rewrite / partial modify) and delete."""

import re
from pathlib import Path
from typing import Any, Dict, Optional

from ..diff_utils import count_line_changes, count_lines, diff_lines
from ..errors import AbortError
from ..logger import get_logger
from ..messages import ToolResult
from .base import (
    ToolContext, ToolPlugin, boolean_prop, integer_prop, require_string,
    resolve_path, string_prop,
)

_log = get_logger(__name__)

__all__ = ["ReadFileTool", "EditFileTool", "DeleteFileTool", "EXISTING_CODE_MARKER",
           "remove_code_block_wrappers"]

EXISTING_CODE_MARKER = "... existing code ..."
MAX_READ_LINES = 250

_FENCE_RE = re.compile(r"^\s*```[\w.+-]*[ \t]*\n(.*?)\n?```\s*$", re.DOTALL)


def remove_code_block_wrappers(text: str) -> str:
    """Strip one markdown code fence wrapping the whole text, if present."""
    m = _FENCE_RE.match(text)
    return m.group(1) if m else text


def _read_text(fp: Path) -> str:
    try:
        return fp.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return fp.read_text(encoding="latin-1")


class ReadFileTool(ToolPlugin):
    name = "read_file"
    description = (
        "Read the contents of a file with 1-indexed line numbers. Reads at most "
        f"{MAX_READ_LINES} lines per call unless should_read_entire_file is true."
    )
    parameters = {
        "target_file": string_prop("Path of the file to read, relative to the working directory or absolute"),
        "should_read_entire_file": boolean_prop("Whether to read the entire file"),
        "start_line_one_indexed": integer_prop("First line to read (1-indexed)"),
        "end_line_one_indexed_inclusive": integer_prop("Last line to read (inclusive)"),
    }
    required = ["target_file"]

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        error = require_string(params, "target_file")
        if error:
            return ToolResult.fail(error)
        target = params["target_file"]
        fp = resolve_path(target, context.workdir)
        if not fp.exists():
            return ToolResult.fail(f"File not found: {target}")
        if not fp.is_file():
            return ToolResult.fail(f"Not a file: {target}")

        try:
            content = _read_text(fp)
        except OSError as e:
            return ToolResult.fail(f"Cannot read {target}: {e}")

        lines = content.splitlines()
        total = len(lines)
        if params.get("should_read_entire_file"):
            return ToolResult(success=True, content=content,
                              short_result=f"Read entire file ({total} lines)")

        if total == 0:
            return ToolResult(success=True, content="File is empty", short_result="Lines 0 of 0")

        start = params.get("start_line_one_indexed")
        end = params.get("end_line_one_indexed_inclusive")
        try:
            start = 1 if start is None else int(start)
            end = min(total, start + MAX_READ_LINES - 1) if end is None else int(end)
        except (TypeError, ValueError):
            return ToolResult.fail("Line numbers must be integers")
        if start > total:
            return ToolResult.fail(f"start_line_one_indexed {start} is past the end of the file ({total} lines)")
        if start > end:
            return ToolResult.fail(
                "start_line_one_indexed must be less than or equal to end_line_one_indexed_inclusive")
        start = max(1, start)
        end = min(end, total, start + MAX_READ_LINES - 1)

        shown = lines[start - 1:end]
        numbered = "\n".join(f"{start + i:4d} | {line}" for i, line in enumerate(shown))
        parts = []
        if start > 1:
            parts.append(f"... {start - 1} lines above not shown ...")
        parts.append(numbered)
        if end < total:
            parts.append(f"... {total - end} lines below not shown ...")
        return ToolResult(success=True, content="\n".join(parts),
                          short_result=f"Lines {start}-{end} of {total}")


class EditFileTool(ToolPlugin):
    name = "edit_file"
    description = (
        "Propose an edit to an existing file or create a new file.\n"
        "For partial edits, write only the changed lines and represent unchanged code "
        "with a comment such as `// ... existing code ...`; the edit is merged by a "
        "separate apply model. Without the marker, code_edit replaces the whole file. "
        "To create a new file, give the full content."
    )
    parameters = {
        "target_file": string_prop("The file to create or modify"),
        "code_edit": string_prop(
            "The new content, or only the changed lines separated by "
            "`// ... existing code ...` comments"),
    }
    required = ["target_file", "code_edit"]

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        for key in self.required:
            error = require_string(params, key)
            if error:
                return ToolResult.fail(error)
        target = params["target_file"]
        code_edit = params["code_edit"]

        fp = resolve_path(target, context.workdir)
        if fp.exists() and not fp.is_file():
            return ToolResult.fail(f"Not a file: {target}")

        existing = ""
        if fp.exists():
            try:
                existing = _read_text(fp)
            except OSError as e:
                return ToolResult.fail(f"Cannot read {target}: {e}")

        has_marker = EXISTING_CODE_MARKER in code_edit
        is_new_file = existing.strip() == ""

        if has_marker:
            if context.apply_edit is None:
                return ToolResult.fail("Partial edits need the apply-edit service, which is not configured")
            _log.info("Applying incremental edit to file: %s", fp)
            try:
                edited = remove_code_block_wrappers(
                    context.apply_edit(existing, code_edit, context.cancel_token))
            except AbortError:
                return ToolResult.aborted()
            except Exception as e:
                return ToolResult.fail(f"Failed to apply edit: {e}")
        else:
            _log.info("%s: %s", "Creating new file" if is_new_file else "Rewriting file", fp)
            edited = remove_code_block_wrappers(code_edit)

        try:
            fp.parent.mkdir(parents=True, exist_ok=True)
            fp.write_text(edited, encoding="utf-8")
        except OSError as e:
            return ToolResult.fail(f"Cannot write {target}: {e}")

        chunks = diff_lines(existing, edited)
        added, removed = count_line_changes(chunks)
        if is_new_file:
            summary = f"Created new file ({count_lines(edited)} lines)"
        elif not has_marker:
            summary = f"Rewrote file ({count_lines(edited)} lines)"
        else:
            summary = f"Modified file (+{added} -{removed} lines)"

        return ToolResult(
            success=True,
            content=summary,
            short_result=summary,
            diff_result=chunks,
            file_path=target,
            original_content=existing,
            new_content=edited,
        )


class DeleteFileTool(ToolPlugin):
    name = "delete_file"
    description = "Delete a file. Fails if the file does not exist or is a directory."
    parameters = {
        "target_file": string_prop("The file to delete"),
    }
    required = ["target_file"]

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        error = require_string(params, "target_file")
        if error:
            return ToolResult.fail(error)
        target = params["target_file"]
        fp = resolve_path(target, context.workdir)
        if not fp.exists():
            return ToolResult.fail(f"File does not exist: {target}")
        if fp.is_dir():
            return ToolResult.fail(f"Is a directory: {target}")

        original: Optional[str] = None
        try:
            original = _read_text(fp)
        except OSError:
            pass
        try:
            fp.unlink()
        except OSError as e:
            return ToolResult.fail(f"Cannot delete {target}: {e}")

        return ToolResult(
            success=True,
            content=f"Successfully deleted file: {target}",
            short_result=f"Deleted {target}",
            file_path=target,
            original_content=original,
        )
