"""Tests for the agent loop controller."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from inkpilot.ai.ai_types import AgentCallbacks, CancellationToken
from inkpilot.ai.client import AIStreamEvent
from inkpilot.ai.errors import PayloadRejectedError
from inkpilot.ai.orchestration.archive_log import ExchangeLogEntry
from inkpilot.ai.orchestration.runner import (
    CANCELLED_TOOL_RESULT,
    AgentConfig,
    AgentRunner,
    cap_tool_result,
)
from inkpilot.ai.orchestration.vision import NO_VISION_ACKNOWLEDGEMENT, SCREENSHOT_PLACEHOLDER, SCREENSHOT_SENTINEL
from tests.helpers import (
    READ_FILE_TOOL,
    CallbackRecorder,
    RecordingExecutor,
    ScriptedClient,
    finish,
    text_events,
    tool_events,
)


class _ListSink:
    def __init__(self) -> None:
        self.entries: list[Any] = []

    def append(self, entry: Any) -> None:
        self.entries.append(entry)


@pytest.mark.asyncio
async def test_plain_answer_finishes_after_one_round() -> None:
    client = ScriptedClient([text_events("Hello ", "there")])
    executor = RecordingExecutor()
    recorder = CallbackRecorder()
    runner = AgentRunner(client, executor, tools=[READ_FILE_TOOL])

    result = await runner.run([{"role": "user", "content": "hi"}], callbacks=recorder.callbacks())

    assert result.status == "answered"
    assert result.rounds == 1
    assert result.text == "Hello there"
    assert recorder.text == "Hello there"
    assert recorder.names[-1] == "done"
    assert executor.calls == []
    assert all(message["role"] != "tool" for message in result.messages)
    assert result.messages[-1] == {"role": "assistant", "content": "Hello there"}
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_native_tool_call_runs_executor_and_starts_next_round() -> None:
    client = ScriptedClient(
        [
            tool_events("read_file", '{"path": "a.md"}', call_id="call_1") + finish(),
            text_events("The file says hello."),
        ]
    )
    executor = RecordingExecutor("hello")
    recorder = CallbackRecorder()
    runner = AgentRunner(client, executor, tools=[READ_FILE_TOOL])

    result = await runner.run([{"role": "user", "content": "Read a.md"}], callbacks=recorder.callbacks())

    assert executor.calls == [("read_file", {"path": "a.md"})]
    assert len(client.requests) == 2
    second = client.requests[1]["messages"]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["tool_calls"][0]["id"] == "call_1"
    assert second[-2]["tool_calls"][0]["function"] == {"name": "read_file", "arguments": '{"path": "a.md"}'}
    assert second[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "hello"}
    assert result.status == "answered"
    assert result.tool_calls == 1
    statuses = [(activity.call_id, activity.status) for activity in recorder.activities]
    assert statuses == [("call_1", "running"), ("call_1", "done")]
    assert recorder.activities[-1].result == "hello"


@pytest.mark.asyncio
async def test_argument_fragments_are_concatenated_by_index() -> None:
    events = [
        AIStreamEvent(type="tool_call.delta", tool_index=0, tool_call_id="call_a", tool_name="read_file"),
        AIStreamEvent(type="tool_call.delta", tool_index=1, tool_call_id="call_b", tool_name="read_file"),
        AIStreamEvent(type="tool_call.delta", tool_index=0, arguments_delta='{"pa'),
        AIStreamEvent(type="tool_call.delta", tool_index=1, arguments_delta='{"path": "b.md"}'),
        AIStreamEvent(type="tool_call.delta", tool_index=0, arguments_delta='th": "a.md"}'),
    ]
    client = ScriptedClient([events + finish(), text_events("done")])
    executor = RecordingExecutor("content")
    runner = AgentRunner(client, executor, tools=[READ_FILE_TOOL])

    await runner.run([{"role": "user", "content": "Read both"}])

    assert executor.calls == [("read_file", {"path": "a.md"}), ("read_file", {"path": "b.md"})]
    tool_messages = [message for message in client.requests[1]["messages"] if message["role"] == "tool"]
    assert [message["tool_call_id"] for message in tool_messages] == ["call_a", "call_b"]


@pytest.mark.asyncio
async def test_inline_markup_is_hidden_and_executed() -> None:
    client = ScriptedClient(
        [
            text_events(
                "Let me check. <tool_",
                'call>{"name": "read_file", "arguments": {"path": "a.md"}}</tool_call>',
            ),
            text_events("Done."),
        ]
    )
    executor = RecordingExecutor("hello")
    recorder = CallbackRecorder()
    runner = AgentRunner(client, executor, tools=[READ_FILE_TOOL])

    result = await runner.run([{"role": "user", "content": "Read a.md"}], callbacks=recorder.callbacks())

    assert recorder.text == "Let me check. Done."
    assert executor.calls == [("read_file", {"path": "a.md"})]
    assistant = client.requests[1]["messages"][-2]
    assert assistant["content"] == "Let me check. "
    assert assistant["tool_calls"][0]["id"].startswith("parsed_read_file_")
    assert result.status == "answered"


@pytest.mark.asyncio
async def test_round_ceiling_reports_exhaustion_in_order() -> None:
    client = ScriptedClient([tool_events("read_file", '{"path": "a.md"}') + finish()])
    executor = RecordingExecutor("hello")
    recorder = CallbackRecorder()
    sink = _ListSink()
    runner = AgentRunner(
        client,
        executor,
        tools=[READ_FILE_TOOL],
        config=AgentConfig(max_rounds=3),
        exchange_log=sink,
    )

    result = await runner.run([{"role": "user", "content": "loop"}], callbacks=recorder.callbacks())

    assert result.status == "exhausted"
    assert result.rounds == 3
    assert len(executor.calls) == 3
    assert len(client.requests) == 3
    assert [name for name in recorder.names if name != "tool"][-3:] == ["chunk", "exhausted", "done"]
    assert "Stopped after 3 tool rounds" in recorder.events[-3][1]
    assert len(sink.entries) == 1
    assert sink.entries[0].tool_calls == 3


@pytest.mark.asyncio
async def test_executor_exception_becomes_error_tool_message() -> None:
    client = ScriptedClient([tool_events("read_file", '{"path": "a.md"}') + finish(), text_events("Sorry.")])
    executor = RecordingExecutor(error=RuntimeError("disk on fire"))
    recorder = CallbackRecorder()
    runner = AgentRunner(client, executor, tools=[READ_FILE_TOOL])

    result = await runner.run([{"role": "user", "content": "Read a.md"}], callbacks=recorder.callbacks())

    assert result.status == "answered"
    assert client.requests[1]["messages"][-1]["content"] == "Error: disk on fire"
    assert recorder.activities[-1].status == "error"
    assert recorder.activities[-1].error == "disk on fire"
    assert "error" not in recorder.names


@pytest.mark.asyncio
async def test_invalid_arguments_skip_the_executor() -> None:
    client = ScriptedClient([tool_events("read_file", '{"path": ') + finish(), text_events("ok")])
    executor = RecordingExecutor()
    runner = AgentRunner(client, executor, tools=[READ_FILE_TOOL])

    await runner.run([{"role": "user", "content": "Read"}])

    assert executor.calls == []
    assert client.requests[1]["messages"][-1]["content"].startswith("Error: Invalid JSON in tool arguments")


@pytest.mark.asyncio
async def test_large_tool_results_are_truncated() -> None:
    client = ScriptedClient([tool_events("read_file", '{"path": "big.md"}') + finish(), text_events("ok")])
    executor = RecordingExecutor("x" * 50)
    runner = AgentRunner(client, executor, tools=[READ_FILE_TOOL], config=AgentConfig(max_tool_result_chars=10))

    await runner.run([{"role": "user", "content": "Read"}])

    content = client.requests[1]["messages"][-1]["content"]
    assert content.startswith("x" * 10 + "\n\n[Output truncated: 40 of 50")
    assert "x" * 11 not in content


def test_cap_tool_result_leaves_short_results_alone() -> None:
    assert cap_tool_result("short", 10) == "short"
    assert cap_tool_result("x" * 20, 0) == "x" * 20


@pytest.mark.asyncio
async def test_service_errors_are_reported_through_on_error() -> None:
    failure = PayloadRejectedError("rejected", status_code=400)
    client = ScriptedClient([failure])
    recorder = CallbackRecorder()
    runner = AgentRunner(client, RecordingExecutor())

    result = await runner.run([{"role": "user", "content": "hi"}], callbacks=recorder.callbacks())

    assert result.status == "error"
    assert result.error is failure
    assert recorder.events == [("error", failure)]


@pytest.mark.asyncio
async def test_callback_failures_do_not_break_the_loop() -> None:
    def explode(_text: str) -> None:
        raise RuntimeError("ui went away")

    client = ScriptedClient([text_events("fine")])
    runner = AgentRunner(client, RecordingExecutor())

    result = await runner.run([{"role": "user", "content": "hi"}], callbacks=AgentCallbacks(on_chunk=explode))

    assert result.status == "answered"


@pytest.mark.asyncio
async def test_exchange_log_receives_answered_runs() -> None:
    sink = _ListSink()
    client = ScriptedClient([text_events("Hello there")])
    runner = AgentRunner(client, RecordingExecutor(), exchange_log=sink)

    await runner.run([{"role": "user", "content": "hi"}], session_id="s_test")

    assert len(sink.entries) == 1
    entry = sink.entries[0]
    assert isinstance(entry, ExchangeLogEntry)
    assert entry.session_id == "s_test"
    assert entry.model == "gpt-4o"
    assert entry.user_message == "hi"
    assert entry.ai_response == "Hello there"
    assert entry.tool_calls is None


class _BlockingClient:
    def __init__(self) -> None:
        self.settings = SimpleNamespace(model="gpt-4o")
        self.release = asyncio.Event()
        self.aborted = False
        self.requests = 0

    async def stream_chat(self, messages, *, tools=None, tool_choice=None):
        self.requests += 1
        yield AIStreamEvent(type="content.delta", content="Working")
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            self.aborted = True
            raise
        yield AIStreamEvent(type="finish", finish_reason="stop")


@pytest.mark.asyncio
async def test_cancellation_aborts_in_flight_stream() -> None:
    client = _BlockingClient()
    token = CancellationToken()
    first_chunk = asyncio.Event()
    errors: list[Exception] = []
    callbacks = AgentCallbacks(on_chunk=lambda _text: first_chunk.set(), on_error=errors.append)
    runner = AgentRunner(client, RecordingExecutor())

    task = asyncio.create_task(
        runner.run([{"role": "user", "content": "hi"}], callbacks=callbacks, cancel_token=token)
    )
    await asyncio.wait_for(first_chunk.wait(), timeout=1)
    token.cancel("user pressed stop")
    result = await asyncio.wait_for(task, timeout=1)

    assert result.status == "cancelled"
    assert client.aborted is True
    assert client.requests == 1
    assert errors == []
    assert token.reason == "user pressed stop"


@pytest.mark.asyncio
async def test_cancellation_between_tools_fills_remaining_results() -> None:
    token = CancellationToken()
    calls: list[str] = []

    async def executor(name: str, arguments: Any) -> str:
        calls.append(arguments["path"])
        token.cancel()
        return "first"

    client = ScriptedClient(
        [
            tool_events("read_file", '{"path": "a.md"}', call_id="c1", index=0)
            + tool_events("read_file", '{"path": "b.md"}', call_id="c2", index=1)
            + finish()
        ]
    )
    recorder = CallbackRecorder()
    runner = AgentRunner(client, executor, tools=[READ_FILE_TOOL])

    result = await runner.run(
        [{"role": "user", "content": "Read both"}], callbacks=recorder.callbacks(), cancel_token=token
    )

    assert result.status == "cancelled"
    assert calls == ["a.md"]
    assert len(client.requests) == 1
    assert result.messages[-2] == {"role": "tool", "tool_call_id": "c1", "content": "first"}
    assert result.messages[-1] == {"role": "tool", "tool_call_id": "c2", "content": CANCELLED_TOOL_RESULT}
    assert [(activity.call_id, activity.status) for activity in recorder.activities] == [
        ("c1", "running"),
        ("c1", "done"),
        ("c2", "error"),
    ]
    assert "error" not in recorder.names


@pytest.mark.asyncio
async def test_pre_cancelled_token_starts_no_round() -> None:
    token = CancellationToken()
    token.cancel()
    client = ScriptedClient([text_events("never")])
    runner = AgentRunner(client, RecordingExecutor())

    result = await runner.run([{"role": "user", "content": "hi"}], cancel_token=token)

    assert result.status == "cancelled"
    assert result.rounds == 0
    assert client.requests == []


@pytest.mark.asyncio
async def test_screenshot_results_are_injected_for_vision_models() -> None:
    client = ScriptedClient(
        [tool_events("take_screenshot", "{}") + finish(), text_events("Looks right.")],
        model="gpt-4o",
    )
    executor = RecordingExecutor(f"{SCREENSHOT_SENTINEL}iVBORw0KGgo")
    runner = AgentRunner(client, executor, tools=[{"type": "function", "function": {"name": "take_screenshot"}}])

    await runner.run([{"role": "user", "content": "Check the page"}])

    second = client.requests[1]["messages"]
    assert second[-2]["role"] == "tool"
    assert second[-2]["content"] == SCREENSHOT_PLACEHOLDER
    assert second[-1]["role"] == "user"
    assert second[-1]["content"][1]["image_url"]["url"] == "data:image/png;base64,iVBORw0KGgo"


@pytest.mark.asyncio
async def test_screenshot_results_are_acknowledged_for_text_models() -> None:
    client = ScriptedClient(
        [tool_events("take_screenshot", "{}") + finish(), text_events("ok")],
        model="o3-mini",
    )
    executor = RecordingExecutor(f"{SCREENSHOT_SENTINEL}data:image/png;base64,AAAA")
    runner = AgentRunner(client, executor, tools=[{"type": "function", "function": {"name": "take_screenshot"}}])

    await runner.run([{"role": "user", "content": "Check the page"}])

    second = client.requests[1]["messages"]
    assert second[-1] == {"role": "tool", "tool_call_id": "call_1", "content": NO_VISION_ACKNOWLEDGEMENT}
    assert runner.supports_vision is False
