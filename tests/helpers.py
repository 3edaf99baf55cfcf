"""Fakes shared by the agent loop tests."""

from __future__ import annotations

import asyncio
import copy
from types import SimpleNamespace
from typing import Any, Iterable, Mapping, Sequence

from inkpilot.ai.ai_types import AgentCallbacks, ToolActivity
from inkpilot.ai.client import AIStreamEvent


def text_events(*chunks: str, finish_reason: str = "stop") -> list[AIStreamEvent]:
    events = [AIStreamEvent(type="content.delta", content=chunk) for chunk in chunks]
    events.append(AIStreamEvent(type="finish", finish_reason=finish_reason))
    return events


def tool_events(name: str, arguments: str, *, call_id: str = "call_1", index: int = 0) -> list[AIStreamEvent]:
    return [
        AIStreamEvent(type="tool_call.delta", tool_index=index, tool_call_id=call_id, tool_name=name),
        AIStreamEvent(type="tool_call.delta", tool_index=index, arguments_delta=arguments),
    ]


def finish(reason: str = "tool_calls") -> list[AIStreamEvent]:
    return [AIStreamEvent(type="finish", finish_reason=reason)]


class ScriptedClient:
    """Streams one scripted round per request; the last round repeats."""

    def __init__(
        self,
        rounds: Sequence[Iterable[AIStreamEvent] | BaseException],
        *,
        model: str = "gpt-4o",
        summary: str = "Summary of the earlier work.",
    ) -> None:
        self.settings = SimpleNamespace(model=model)
        self._rounds = [round_ if isinstance(round_, BaseException) else list(round_) for round_ in rounds]
        self._summary = summary
        self.requests: list[dict[str, Any]] = []
        self.summary_requests: list[list[Mapping[str, Any]]] = []

    async def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: Any | None = None,
    ):
        self.requests.append({"messages": copy.deepcopy(list(messages)), "tools": tools, "tool_choice": tool_choice})
        script = self._rounds[min(len(self.requests), len(self._rounds)) - 1]
        if isinstance(script, BaseException):
            raise script
        for event in script:
            await asyncio.sleep(0)
            yield event

    async def complete(self, messages: Iterable[Mapping[str, Any]]) -> str:
        self.summary_requests.append(list(messages))
        return self._summary


class RecordingExecutor:
    def __init__(self, result: Any = "ok", *, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def __call__(self, name: str, arguments: Mapping[str, Any]) -> Any:
        self.calls.append((name, dict(arguments)))
        if self.error is not None:
            raise self.error
        return self.result


class CallbackRecorder:
    def __init__(self) -> None:
        self.events: list[tuple[Any, ...]] = []

    def callbacks(self) -> AgentCallbacks:
        return AgentCallbacks(
            on_chunk=lambda text: self.events.append(("chunk", text)),
            on_tool_activity=lambda activity: self.events.append(("tool", activity)),
            on_done=lambda: self.events.append(("done",)),
            on_error=lambda error: self.events.append(("error", error)),
            on_exhausted=lambda: self.events.append(("exhausted",)),
        )

    @property
    def names(self) -> list[str]:
        return [event[0] for event in self.events]

    @property
    def text(self) -> str:
        return "".join(event[1] for event in self.events if event[0] == "chunk")

    @property
    def activities(self) -> list[ToolActivity]:
        return [event[1] for event in self.events if event[0] == "tool"]


READ_FILE_TOOL = {
    "type": "function",
    "function": {
        "name": "read_file",
        "description": "Read a file from the workspace.",
        "parameters": {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
    },
}
