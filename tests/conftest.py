"""Shared fixtures for wave-agent tests."""

import os
from typing import List, Optional

import pytest
import yaml

# Use litellm's bundled model cost map; the remote fetch fails offline and its
# warning deadlocks litellm's import under pytest's log capture.
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

from wave_agent.llm import ModelResponse
from wave_agent.messages import Message, Role, Session, TextBlock, ToolCall, Usage
from wave_agent.tools import ToolContext


@pytest.fixture
def tmp_dir(tmp_path):
    """Provide a temporary directory and cd into it."""
    orig = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(orig)


@pytest.fixture
def sample_config_data():
    """Minimal .agent.conf.yml data dict."""
    return {
        "active-model": "local",
        "token-limit": 64000,
        "max-iterations": 20,
        "command-timeout": 30,
        "verbose": False,
        "mcp-config": ".mcp.json",
        "models": {
            "local": {
                "provider": "local",
                "model": "openai/model",
                "description": "Local test model",
                "temperature": 0.0,
                "max-tokens": 8192,
                "api-base": "http://localhost:8080/v1",
                "api-key": "not-needed",
            },
            "fast": {
                "provider": "openai",
                "model": "openai/gpt-4o-mini",
                "api-key-env": "TEST_FAST_KEY",
            },
        },
    }


@pytest.fixture
def config_yaml_file(tmp_dir, sample_config_data):
    """Write a config YAML to tmp_dir and return its Path."""
    path = tmp_dir / ".agent.conf.yml"
    with open(path, "w") as f:
        yaml.dump(sample_config_data, f, default_flow_style=False)
    return path


@pytest.fixture
def tool_context(tmp_path):
    return ToolContext(workdir=str(tmp_path))


class FakeLLM:
    """Scripted stand-in for LLMAdapter.

    ``responses`` are returned in order by ``call_agent``; an exception
    instance in the list is raised instead. ``summary`` (or an exception) is
    what ``compress_messages`` produces.
    """

    def __init__(self, responses=None, summary="summary of earlier work"):
        self.responses = list(responses or [])
        self.summary = summary
        self.agent_calls: List[list] = []
        self.compress_calls: List[list] = []
        self.on_call = None

    def call_agent(self, wire_messages, tools, cancel_token=None, system_prompt=None):
        self.agent_calls.append(wire_messages)
        if self.on_call is not None:
            self.on_call(len(self.agent_calls), cancel_token)
        if not self.responses:
            return ModelResponse(content="done")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def compress_messages(self, wire_messages, cancel_token=None):
        self.compress_calls.append(wire_messages)
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary

    def apply_edit(self, existing, code_edit, cancel_token=None):
        return existing


@pytest.fixture
def fake_llm():
    return FakeLLM()


def text_response(text: str, total_tokens: Optional[int] = None) -> ModelResponse:
    usage = Usage(total_tokens=total_tokens) if total_tokens is not None else None
    return ModelResponse(content=text, usage=usage)


def tool_response(*calls: ToolCall, text: Optional[str] = None,
                  total_tokens: Optional[int] = None) -> ModelResponse:
    usage = Usage(total_tokens=total_tokens) if total_tokens is not None else None
    return ModelResponse(content=text, tool_calls=list(calls), usage=usage)


def make_session(pairs: int, workdir: str = ".") -> Session:
    """Session holding ``pairs`` user/assistant text exchanges."""
    session = Session(workdir=workdir)
    for i in range(pairs):
        session.append(Message(Role.USER, [TextBlock(f"question {i}")]))
        session.append(Message(Role.ASSISTANT, [TextBlock(f"answer {i}")]))
    return session
