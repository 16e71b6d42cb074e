"""Tests for the conversation loop."""

import gc

import pytest

from conftest import FakeLLM, make_session, text_response, tool_response

from wave_agent.errors import AbortError, ModelCallError, OrchestratorBusyError
from wave_agent.messages import Role, Session, ToolCall, ToolResult
from wave_agent.orchestrator import ConversationOrchestrator, EventKind
from wave_agent.process_manager import ProcessManager, ShellStatus
from wave_agent.tools import ToolContext, ToolExecutor, ToolPlugin, ToolRegistry


class EchoTool(ToolPlugin):
    name = "echo"
    description = "Echo the text parameter"
    parameters = {"text": {"type": "string"}}
    required = ["text"]

    def __init__(self, on_execute=None):
        self.calls = []
        self.on_execute = on_execute

    def execute(self, params, context):
        self.calls.append(params)
        if self.on_execute is not None:
            self.on_execute(params)
        return ToolResult(success=True, content=f"echo: {params.get('text')}")


class FailingTool(ToolPlugin):
    name = "explode"

    def execute(self, params, context):
        raise RuntimeError("kaboom")


class FakeStore:
    def __init__(self):
        self.saved = []

    def save(self, session):
        self.saved.append(len(session.messages))


def _build(llm, tools=None, session=None, **kwargs):
    tools = tools if tools is not None else [EchoTool()]
    registry = ToolRegistry(plugins=tools)
    executor = ToolExecutor(registry, ToolContext(workdir="."))
    return ConversationOrchestrator(llm=llm, executor=executor,
                                    session=session or Session(workdir="."), **kwargs)


def _kinds(events):
    return [e.kind for e in events]


def test_text_only_turn():
    llm = FakeLLM([text_response("hello there")])
    orch = _build(llm)

    events = list(orch.submit("hi"))

    assert _kinds(events) == [EventKind.THINKING_STARTED, EventKind.THINKING_ENDED, EventKind.FINAL_TEXT]
    assert events[-1].text == "hello there"
    assert [m.role for m in orch.session.messages] == [Role.USER, Role.ASSISTANT]
    assert llm.agent_calls[0] == [{"role": "user", "content": "hi"}]
    assert orch.busy is False


def test_each_tool_call_gets_one_result_in_order():
    calls = [ToolCall(id=f"call_{i}", name="echo", arguments={"text": str(i)}) for i in range(3)]
    llm = FakeLLM([tool_response(*calls), text_response("all done")])
    echo = EchoTool()
    orch = _build(llm, tools=[echo])

    events = list(orch.submit("run them"))

    tool_messages = [m for m in orch.session.messages if m.role == Role.TOOL]
    assert [m.tool_result.tool_call_id for m in tool_messages] == ["call_0", "call_1", "call_2"]
    assert [m.tool_result.content for m in tool_messages] == ["echo: 0", "echo: 1", "echo: 2"]
    assert [c["text"] for c in echo.calls] == ["0", "1", "2"]
    # Second model call sees every result.
    second = llm.agent_calls[1]
    assert [w["role"] for w in second] == ["user", "assistant", "tool", "tool", "tool"]
    assert _kinds(events).count(EventKind.TOOL_FINISHED) == 3
    assert events[-1].kind == EventKind.FINAL_TEXT


def test_tool_errors_do_not_end_the_turn():
    llm = FakeLLM([
        tool_response(ToolCall(id="a", name="explode"), ToolCall(id="b", name="missing")),
        text_response("recovered"),
    ])
    orch = _build(llm, tools=[FailingTool()])

    events = list(orch.submit("go"))

    results = [m.tool_result for m in orch.session.messages if m.role == Role.TOOL]
    assert [r.success for r in results] == [False, False]
    assert "kaboom" in results[0].content
    assert results[1].error == "Tool 'missing' not found"
    assert events[-1].kind == EventKind.FINAL_TEXT
    assert len(llm.agent_calls) == 2


def test_unparseable_arguments_emit_error_and_continue():
    bad = ToolCall(id="bad", name="echo", arguments={}, raw_arguments="{not json")
    llm = FakeLLM([tool_response(bad), text_response("ok")])
    echo = EchoTool()
    orch = _build(llm, tools=[echo])

    events = list(orch.submit("go"))

    errors = [e for e in events if e.kind == EventKind.ERROR]
    assert len(errors) == 1 and not errors[0].fatal
    result = orch.session.messages[2].tool_result
    assert result.success is False
    assert "Invalid arguments" in result.error
    assert echo.calls == []
    assert events[-1].kind == EventKind.FINAL_TEXT


def test_abort_after_first_of_two_tools():
    calls = [ToolCall(id="t1", name="echo", arguments={"text": "one"}),
             ToolCall(id="t2", name="echo", arguments={"text": "two"})]
    llm = FakeLLM([tool_response(*calls), text_response("never")])
    orch = None

    def _abort_after_first(params):
        orch.abort()

    echo = EchoTool(on_execute=_abort_after_first)
    orch = _build(llm, tools=[echo])

    events = list(orch.submit("go"))

    results = [m.tool_result for m in orch.session.messages if m.role == Role.TOOL]
    assert results[0].success is True
    assert results[0].content == "echo: one"
    assert results[1].success is False
    assert results[1].error == "aborted"
    assert len(echo.calls) == 1
    assert len(llm.agent_calls) == 1
    assert events[-1].kind == EventKind.ABORTED


def test_abort_during_model_call():
    llm = FakeLLM([AbortError()])
    orch = _build(llm)

    events = list(orch.submit("go"))

    assert events[-1].kind == EventKind.ABORTED
    assert [m.role for m in orch.session.messages] == [Role.USER]


def test_model_error_is_terminal():
    llm = FakeLLM([ModelCallError("connection refused")])
    orch = _build(llm)

    events = list(orch.submit("go"))

    assert events[-1].kind == EventKind.ERROR
    assert events[-1].fatal is True
    assert "connection refused" in events[-1].error
    assert len(llm.agent_calls) == 1
    # A later turn runs normally.
    llm.responses = [text_response("fine")]
    assert list(orch.submit("again"))[-1].kind == EventKind.FINAL_TEXT


def test_compression_after_high_usage_turn():
    llm = FakeLLM([text_response("answer", total_tokens=70000)], summary="compressed")
    orch = _build(llm, session=make_session(8))

    list(orch.submit("next question"))

    assert len(llm.compress_calls) == 1
    assert len(llm.compress_calls[0]) == 6
    assert len(orch.session.messages) == 16 + 2 - 5
    assert orch.session.total_tokens == 70000
    assert orch.session.messages[-2].compress_block.summary == "compressed"


def test_no_compression_below_limit():
    llm = FakeLLM([text_response("answer", total_tokens=64000)])
    orch = _build(llm, session=make_session(8))

    list(orch.submit("next"))

    assert llm.compress_calls == []
    assert len(orch.session.messages) == 18


def test_failed_compression_does_not_break_turn():
    llm = FakeLLM([text_response("answer", total_tokens=90000)],
                  summary=RuntimeError("summariser down"))
    orch = _build(llm, session=make_session(8))

    events = list(orch.submit("next"))

    assert events[-1].kind == EventKind.FINAL_TEXT
    assert len(orch.session.messages) == 18


def test_iteration_cap():
    loop_call = ToolCall(id="x", name="echo", arguments={"text": "again"})
    llm = FakeLLM([tool_response(loop_call) for _ in range(5)])
    orch = _build(llm, max_iterations=3)

    events = list(orch.submit("loop"))

    assert len(llm.agent_calls) == 3
    assert events[-1].kind == EventKind.ERROR
    assert "max iterations" in events[-1].error


def test_busy_guard():
    llm = FakeLLM([text_response("one")])
    orch = _build(llm)

    stream = orch.submit("first")
    with pytest.raises(OrchestratorBusyError):
        orch.submit("second")
    list(stream)
    assert orch.busy is False
    assert orch.abort() is False


def test_session_saved_after_turn():
    store = FakeStore()
    llm = FakeLLM([text_response("saved")])
    orch = _build(llm, session_store=store)

    list(orch.submit("hello"))

    assert store.saved == [2]


def test_dropped_stream_frees_the_orchestrator():
    llm = FakeLLM([text_response("later")])
    orch = _build(llm)

    stream = orch.submit("never consumed")
    assert orch.busy is True
    del stream
    gc.collect()

    assert orch.busy is False
    events = list(orch.submit("again"))
    assert events[-1].kind == EventKind.FINAL_TEXT
    assert len(llm.agent_calls) == 1


def test_closed_stream_frees_the_orchestrator():
    llm = FakeLLM([text_response("one"), text_response("two")])
    orch = _build(llm)

    orch.submit("unused").close()
    assert orch.busy is False

    stream = orch.submit("partly consumed")
    assert next(stream).kind == EventKind.THINKING_STARTED
    stream.close()
    assert orch.busy is False
    assert orch.abort() is False


def test_background_shell_survives_abort(tmp_path):
    manager = ProcessManager(str(tmp_path))
    executor = ToolExecutor(ToolRegistry(), ToolContext(workdir=str(tmp_path), process_manager=manager))
    spawn = ToolCall(id="bg", name="run_terminal_cmd",
                     arguments={"command": "sleep 5", "run_in_background": True})
    llm = FakeLLM([tool_response(spawn), text_response("never")])
    orch = ConversationOrchestrator(llm=llm, executor=executor, session=Session(workdir=str(tmp_path)))

    try:
        events = []
        for event in orch.submit("start a server"):
            events.append(event)
            if event.kind == EventKind.TOOL_FINISHED:
                orch.abort()

        assert events[-1].kind == EventKind.ABORTED
        assert len(llm.agent_calls) == 1
        shell = manager.get("bash_1")
        assert shell.status == ShellStatus.RUNNING
        assert shell.is_running
    finally:
        manager.cleanup()
