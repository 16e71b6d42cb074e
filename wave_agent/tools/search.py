"""Regex search over the working tree."""

import fnmatch
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..messages import ToolResult
from .base import ToolContext, ToolPlugin, boolean_prop, require_string, string_prop

__all__ = ["GrepSearchTool", "MAX_MATCHES", "SKIP_DIRS"]

MAX_MATCHES = 50
MAX_LINE_LENGTH = 300

SKIP_DIRS = {
    ".git", ".svn", ".hg", ".venv", "venv", "env",
    "node_modules", "__pycache__", ".mypy_cache",
    ".pytest_cache", ".tox", "dist", "build",
    ".next", ".nuxt", ".cache",
}


def _split_globs(pattern: Optional[str]) -> List[str]:
    if not pattern:
        return []
    return [p.strip() for p in pattern.split(",") if p.strip()]


def _matches_any(rel_path: str, globs: List[str]) -> bool:
    name = os.path.basename(rel_path)
    return any(fnmatch.fnmatch(rel_path, g) or fnmatch.fnmatch(name, g) for g in globs)


def _is_binary(fp: Path) -> bool:
    try:
        with open(fp, "rb") as f:
            return b"\0" in f.read(1024)
    except OSError:
        return True


class GrepSearchTool(ToolPlugin):
    name = "grep_search"
    description = (
        "Fast exact regex search over text files in the working directory. "
        f"Results are capped at {MAX_MATCHES} matching lines; narrow the search "
        "with include_pattern / exclude_pattern (comma-separated globs such as '*.py')."
    )
    parameters = {
        "query": string_prop("The regex pattern to search for"),
        "include_pattern": string_prop("Glob pattern for files to include (e.g. '*.ts')"),
        "exclude_pattern": string_prop("Glob pattern for files to exclude"),
        "case_sensitive": boolean_prop("Whether the search is case sensitive (default true)"),
    }
    required = ["query"]

    def execute(self, params: Dict[str, Any], context: ToolContext) -> ToolResult:
        error = require_string(params, "query")
        if error:
            return ToolResult.fail(error)
        query = params["query"]
        flags = 0 if params.get("case_sensitive", True) else re.IGNORECASE
        try:
            pattern = re.compile(query, flags)
        except re.error as e:
            return ToolResult.fail(f"Invalid regex pattern {query!r}: {e}")

        include = _split_globs(params.get("include_pattern"))
        exclude = _split_globs(params.get("exclude_pattern"))
        root = Path(context.workdir).resolve()

        matches: List[str] = []
        total = 0
        for rel, fp in self._walk(root, include, exclude):
            if context.cancelled:
                return ToolResult.aborted()
            try:
                with open(fp, "r", encoding="utf-8", errors="replace") as f:
                    for lineno, line in enumerate(f, 1):
                        if pattern.search(line):
                            total += 1
                            if len(matches) < MAX_MATCHES:
                                text = line.rstrip("\n")
                                if len(text) > MAX_LINE_LENGTH:
                                    text = text[:MAX_LINE_LENGTH] + "..."
                                matches.append(f"{rel}:{lineno}:{text}")
            except OSError:
                continue

        if total == 0:
            return ToolResult(success=True, content="No matches found",
                              short_result="No matches found")

        content = "\n".join(matches)
        if total > MAX_MATCHES:
            content += f"\n\n... {total - MAX_MATCHES} more matches not shown. Narrow the search."
            short = f"Found {total} matches (showing first {MAX_MATCHES})"
        else:
            short = f"Found {total} match{'es' if total != 1 else ''}"
        return ToolResult(success=True, content=content, short_result=short)

    @staticmethod
    def _walk(root: Path, include: List[str], exclude: List[str]) -> Iterator[tuple]:
        for dirpath, dirs, files in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRS and not d.endswith(".egg-info"))
            for name in sorted(files):
                fp = Path(dirpath) / name
                rel = fp.relative_to(root).as_posix()
                if include and not _matches_any(rel, include):
                    continue
                if exclude and _matches_any(rel, exclude):
                    continue
                if _is_binary(fp):
                    continue
                yield rel, fp

    def format_compact_params(self, params: Dict[str, Any]) -> str:
        query = params.get("query") or ""
        include = params.get("include_pattern")
        return f"{query} in {include}" if include else query
