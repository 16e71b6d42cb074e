"""LLM adapter via litellm: agent calls, history summarisation and edit merging."""

import json
import platform
from dataclasses import dataclass
from typing import List, Dict, Any, Optional

import litellm

from .cancellation import CancellationToken, run_cancellable
from .errors import AbortError, CompressionError, ModelCallError
from .logger import get_logger
from .messages import ToolCall, Usage

litellm.suppress_debug_info = True

_log = get_logger(__name__)

__all__ = ["LLMAdapter", "ModelResponse", "build_system_prompt", "parse_tool_arguments"]


@dataclass
class ModelResponse:
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None

    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


BASE_SYSTEM_PROMPT = """\
You are Wave, an AI coding assistant running inside the user's project directory.
You help users understand, modify, and manage their codebase through natural conversation.

## Core workflow:
1. Explore first: grep_search and read_file before making changes.
2. Edit precisely: use edit_file with `// ... existing code ...` markers for partial edits.
3. Verify: read the modified file or run tests after editing.
4. Long-running commands (servers, watchers) go to the background with
   run_terminal_cmd(run_in_background=true); inspect them with bash_output and stop them with kill_bash.

## Rules:
- Paths are relative to the working directory unless absolute.
- Briefly explain your intent before making changes.
- Respond in the same language the user uses.
"""

COMPRESS_SYSTEM_PROMPT = """\
You compress conversation history for a coding assistant.
Summarise the conversation below so the assistant can continue the work without it.
Keep: the user's goals and constraints, decisions made, files read or changed (with paths),
commands run and their outcomes, errors still unresolved, and any pending next steps.
Drop pleasantries and repeated content. Write plain prose and short bullet lists, at most 400 words.
"""

APPLY_EDIT_SYSTEM_PROMPT = """\
You merge a partial code edit into an existing file.
The edit uses comments such as `// ... existing code ...` to stand for unchanged regions of the
original file. Output the COMPLETE updated file and nothing else: no explanations, no markdown fences.
Keep every unchanged line of the original exactly as it is.
"""


def build_system_prompt(workdir: str, project_instructions: Optional[str] = None) -> str:
    prompt = BASE_SYSTEM_PROMPT + (
        f"\n## Environment:\n- Working directory: {workdir}\n"
        f"- Platform: {platform.system()}\n"
    )
    if project_instructions:
        prompt += f"\n## Project instructions:\n{project_instructions}"
    return prompt


def parse_tool_arguments(raw: Optional[str]) -> tuple[Dict[str, Any], Optional[str]]:
    """Parse a tool-call argument string.

    Returns ``(arguments, None)`` on success and ``({}, raw)`` when the text is
    not a JSON object. An empty string means a tool without parameters.
    """
    text = (raw or "").strip()
    if not text:
        return {}, None
    try:
        args = json.loads(text)
    except json.JSONDecodeError:
        return {}, raw
    if not isinstance(args, dict):
        return {}, raw
    return args, None


def _usage_from(raw_usage) -> Optional[Usage]:
    if not raw_usage:
        return None
    return Usage(
        prompt_tokens=getattr(raw_usage, "prompt_tokens", 0) or 0,
        completion_tokens=getattr(raw_usage, "completion_tokens", 0) or 0,
        total_tokens=getattr(raw_usage, "total_tokens", 0) or 0,
    )


class LLMAdapter:
    """Unified LLM interface. Passes api_key/api_base directly to litellm,
    avoiding env-var pollution when switching between providers."""

    def __init__(self, model: str, temperature: float = 0.0,
                 max_tokens: int = 8192, api_base: Optional[str] = None,
                 api_key: Optional[str] = None, timeout: float = 600.0):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key
        self.timeout = timeout

    def _completion_kwargs(self, messages: List[Dict[str, Any]],
                           tools: Optional[List[Dict]] = None) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "model": self.model, "messages": messages,
            "temperature": self.temperature, "max_tokens": self.max_tokens,
            "timeout": self.timeout,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key
        return kwargs

    def chat(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict]] = None) -> ModelResponse:
        try:
            response = litellm.completion(**self._completion_kwargs(messages, tools))
        except litellm.exceptions.AuthenticationError as e:
            raise ModelCallError(f"Auth failed. Check API key.\n{e}", e)
        except litellm.exceptions.APIConnectionError as e:
            raise ModelCallError(
                f"Cannot connect: model={self.model}, base={self.api_base or 'default'}\n{e}", e)
        except litellm.exceptions.Timeout as e:
            raise ModelCallError(f"Request timed out after {self.timeout}s: {e}", e)
        except Exception as e:
            raise ModelCallError(f"LLM error: {type(e).__name__}: {e}", e)

        choice = response.choices[0]
        msg = choice.message

        tool_calls = None
        if msg.tool_calls:
            tool_calls = []
            for tc in msg.tool_calls:
                args, raw = parse_tool_arguments(tc.function.arguments)
                tool_calls.append(ToolCall(id=tc.id or "", name=tc.function.name or "",
                                           arguments=args, raw_arguments=raw))

        return ModelResponse(
            content=msg.content,
            tool_calls=tool_calls,
            usage=_usage_from(getattr(response, "usage", None)),
            finish_reason=getattr(choice, "finish_reason", None),
        )

    # ── Collaborators used by the orchestration engine ──

    def call_agent(self, wire_messages: List[Dict[str, Any]], tools: Optional[List[Dict]],
                   cancel_token: Optional[CancellationToken] = None,
                   system_prompt: Optional[str] = None) -> ModelResponse:
        messages = list(wire_messages)
        if system_prompt:
            messages = [{"role": "system", "content": system_prompt}] + messages
        return run_cancellable(self.chat, cancel_token, messages, tools)

    def compress_messages(self, wire_messages: List[Dict[str, Any]],
                          cancel_token: Optional[CancellationToken] = None) -> str:
        transcript = json.dumps(wire_messages, ensure_ascii=False, indent=1)
        messages = [
            {"role": "system", "content": COMPRESS_SYSTEM_PROMPT},
            {"role": "user", "content": f"Conversation to compress:\n{transcript}"},
        ]
        try:
            response = run_cancellable(self.chat, cancel_token, messages, None)
        except AbortError:
            raise
        except ModelCallError as e:
            raise CompressionError(str(e)) from e
        summary = (response.content or "").strip()
        if not summary:
            raise CompressionError("Summariser returned an empty summary")
        return summary

    def apply_edit(self, existing_content: str, code_edit: str,
                   cancel_token: Optional[CancellationToken] = None) -> str:
        messages = [
            {"role": "system", "content": APPLY_EDIT_SYSTEM_PROMPT},
            {"role": "user", "content": (
                f"<original_file>\n{existing_content}\n</original_file>\n\n"
                f"<edit>\n{code_edit}\n</edit>"
            )},
        ]
        response = run_cancellable(self.chat, cancel_token, messages)
        if not response.content:
            raise ModelCallError("Apply model returned empty content")
        return response.content
