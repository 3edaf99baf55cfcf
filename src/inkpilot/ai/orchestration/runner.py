"""Agent Runner: drives the multi-round tool-calling loop.

Each round re-sanitizes the history, streams one completion, detects tool
calls (native deltas first, inline markup as a fallback), runs the requested
tools through the injected executor and appends their results. Between
rounds the history passes through the context budget manager and the
screenshot injector. The loop ends when the model answers without calling a
tool, when the round ceiling is reached, on a service error or when the
caller cancels.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Collection, Dict, List, Literal, Mapping, Protocol, Sequence

from ..ai_types import (
    AgentCallbacks,
    CancellationToken,
    ChatMessage,
    ToolActivity,
    ToolCall,
    ToolExecutor,
    parse_tool_arguments,
)
from ..client import AIStreamEvent
from ..errors import AIServiceError
from ..models import model_supports_vision
from ..utils.tokens import content_text
from .archive_log import ArchiveSink, ExchangeLogEntry, new_session_id
from .budget_manager import ContextBudgetManager
from .sanitizer import sanitize_messages
from .stream_filter import StreamFilter
from .tool_call_parser import extract_tool_calls, parsed_tool_call_id
from .vision import VisionInjector

__all__ = [
    "MAX_ROUNDS",
    "MAX_TOOL_RESULT_CHARS",
    "CANCELLED_TOOL_RESULT",
    "AgentConfig",
    "AgentRunResult",
    "AgentRunner",
    "cap_tool_result",
]

LOGGER = logging.getLogger(__name__)

MAX_ROUNDS = 100
MAX_TOOL_RESULT_CHARS = 32_000
CANCELLED_TOOL_RESULT = "Cancelled by user."
EXHAUSTED_NOTICE = (
    "\n\n[Stopped after {rounds} tool rounds without a final answer. Send a message to let the assistant continue.]"
)

AgentRunStatus = Literal["answered", "exhausted", "error", "cancelled"]


class StreamingClient(Protocol):
    settings: Any

    def stream_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        tool_choice: Any | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        ...


@dataclass(slots=True, frozen=True)
class AgentConfig:
    """Configuration for the agent loop.

    Attributes:
        max_rounds: Round ceiling before the session reports exhaustion.
        max_tool_result_chars: Tool results longer than this are truncated.
        tool_choice: Optional ``tool_choice`` forwarded with every request.
        supports_vision: Overrides the model-derived vision capability.
    """

    max_rounds: int = MAX_ROUNDS
    max_tool_result_chars: int = MAX_TOOL_RESULT_CHARS
    tool_choice: Any | None = None
    supports_vision: bool | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Terminal state of one :meth:`AgentRunner.run` call."""

    status: AgentRunStatus
    messages: List[ChatMessage]
    rounds: int
    text: str = ""
    tool_calls: int = 0
    error: Exception | None = None


@dataclass(slots=True)
class _RoundOutcome:
    raw_text: str
    visible_text: str
    native_calls: List[ToolCall]
    finish_reason: str | None = None


@dataclass(slots=True)
class _NativeCallAccumulator:
    """Reassembles native tool calls from indexed stream deltas."""

    entries: Dict[int, Dict[str, Any]] = field(default_factory=dict)

    def add(self, event: AIStreamEvent) -> None:
        index = event.tool_index if event.tool_index is not None else 0
        entry = self.entries.setdefault(index, {"id": "", "name": [], "arguments": []})
        if event.tool_call_id:
            entry["id"] = event.tool_call_id
        if event.tool_name:
            entry["name"].append(event.tool_name)
        if event.arguments_delta:
            entry["arguments"].append(event.arguments_delta)

    def calls(self) -> List[ToolCall]:
        calls: List[ToolCall] = []
        for index in sorted(self.entries):
            entry = self.entries[index]
            name = "".join(entry["name"]).strip()
            if not name:
                LOGGER.debug("Dropping native tool call %d without a name", index)
                continue
            calls.append(
                ToolCall(
                    call_id=entry["id"] or parsed_tool_call_id(name, index),
                    name=name,
                    arguments="".join(entry["arguments"]) or "{}",
                )
            )
        return calls


def cap_tool_result(result: str, limit: int = MAX_TOOL_RESULT_CHARS) -> str:
    """Truncate ``result`` beyond ``limit`` characters with an explicit marker."""

    if limit <= 0 or len(result) <= limit:
        return result
    omitted = len(result) - limit
    return f"{result[:limit]}\n\n[Output truncated: {omitted} of {len(result)} characters omitted.]"


class AgentRunner:
    """Runs the agent loop for one session at a time.

    Example:
        >>> runner = AgentRunner(client, executor, tools=tool_specs)
        >>> result = await runner.run(history, callbacks=AgentCallbacks(on_chunk=print))
        >>> result.status
        'answered'
    """

    def __init__(
        self,
        client: StreamingClient,
        tool_executor: ToolExecutor,
        *,
        tools: Sequence[Mapping[str, Any]] | None = None,
        config: AgentConfig | None = None,
        budget_manager: ContextBudgetManager | None = None,
        vision: VisionInjector | None = None,
        exchange_log: ArchiveSink | None = None,
    ) -> None:
        self._client = client
        self._tool_executor = tool_executor
        self._tools = tuple(tools) if tools else ()
        self._config = config or AgentConfig()
        self._budget = budget_manager or ContextBudgetManager(
            client=client if hasattr(client, "complete") else None
        )
        self._vision = vision or VisionInjector()
        self._exchange_log = exchange_log
        self._known_tools = frozenset(_tool_names(self._tools))

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def tools(self) -> tuple[Mapping[str, Any], ...]:
        return self._tools

    @property
    def budget_manager(self) -> ContextBudgetManager:
        return self._budget

    @property
    def supports_vision(self) -> bool:
        if self._config.supports_vision is not None:
            return self._config.supports_vision
        return model_supports_vision(getattr(getattr(self._client, "settings", None), "model", None))

    async def run(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        callbacks: AgentCallbacks | None = None,
        cancel_token: CancellationToken | None = None,
        session_id: str | None = None,
    ) -> AgentRunResult:
        """Drive rounds until the model answers, the ceiling is hit, or the run stops."""

        callbacks = callbacks or AgentCallbacks()
        token = cancel_token or CancellationToken()
        session_id = session_id or new_session_id()
        started_at = datetime.now(UTC).isoformat()
        history = sanitize_messages(messages)
        user_message = _last_user_text(messages)
        responses: List[str] = []
        rounds = 0
        tool_call_total = 0
        max_rounds = max(1, self._config.max_rounds)
        LOGGER.debug("Session %s starting with %d message(s)", session_id, len(history))

        try:
            while rounds < max_rounds:
                if token.cancelled:
                    return self._cancelled(history, rounds, tool_call_total)
                rounds += 1
                history = sanitize_messages(history)
                outcome = await self._stream_round(history, callbacks, token)
                if outcome is None:
                    return self._cancelled(history, rounds, tool_call_total)

                calls = extract_tool_calls(
                    outcome.raw_text,
                    outcome.native_calls,
                    known_tools=self._known_tools,
                )
                if outcome.visible_text.strip():
                    responses.append(outcome.visible_text)
                if not calls:
                    if outcome.visible_text.strip():
                        history.append({"role": "assistant", "content": outcome.visible_text})
                    await callbacks.emit("on_done")
                    await self._log_exchange(session_id, started_at, user_message, responses, tool_call_total)
                    LOGGER.debug("Session %s answered after %d round(s)", session_id, rounds)
                    return AgentRunResult(
                        status="answered",
                        messages=history,
                        rounds=rounds,
                        text=outcome.visible_text,
                        tool_calls=tool_call_total,
                    )

                history.append(
                    {
                        "role": "assistant",
                        "content": outcome.visible_text,
                        "tool_calls": [call.to_chat_param() for call in calls],
                    }
                )
                tool_call_total += len(calls)
                batch_cancelled = await self._execute_tools(calls, history, callbacks, token)
                if batch_cancelled:
                    return self._cancelled(history, rounds, tool_call_total)

                history = await self._budget.maybe_compress(history, session_id=session_id, round_index=rounds)
                history = self._vision.apply(history, supports_vision=self.supports_vision)
        except AIServiceError as exc:
            LOGGER.warning("Session %s failed in round %d: %s", session_id, rounds, exc)
            await callbacks.emit("on_error", exc)
            return AgentRunResult(
                status="error", messages=history, rounds=rounds, tool_calls=tool_call_total, error=exc
            )
        except Exception as exc:
            LOGGER.exception("Session %s failed with an unexpected exception", session_id)
            await callbacks.emit("on_error", exc)
            return AgentRunResult(
                status="error", messages=history, rounds=rounds, tool_calls=tool_call_total, error=exc
            )

        LOGGER.warning("Session %s reached the round ceiling (%d)", session_id, max_rounds)
        notice = EXHAUSTED_NOTICE.format(rounds=max_rounds)
        await callbacks.emit("on_chunk", notice)
        await callbacks.emit("on_exhausted")
        await callbacks.emit("on_done")
        await self._log_exchange(session_id, started_at, user_message, responses, tool_call_total)
        return AgentRunResult(
            status="exhausted",
            messages=sanitize_messages(history),
            rounds=rounds,
            text=notice,
            tool_calls=tool_call_total,
        )

    async def _stream_round(
        self,
        history: Sequence[Mapping[str, Any]],
        callbacks: AgentCallbacks,
        token: CancellationToken,
    ) -> _RoundOutcome | None:
        """Stream one completion; returns ``None`` when cancelled mid-stream."""

        stream_filter = StreamFilter()
        accumulator = _NativeCallAccumulator()
        raw_parts: List[str] = []
        finish: Dict[str, str | None] = {"reason": None}

        async def consume() -> None:
            stream = self._client.stream_chat(
                history,
                tools=self._tools or None,
                tool_choice=self._config.tool_choice if self._tools else None,
            )
            async for event in stream:
                if event.type == "content.delta" and event.content:
                    raw_parts.append(event.content)
                    visible = stream_filter.feed(event.content)
                    if visible:
                        await callbacks.emit("on_chunk", visible)
                elif event.type == "tool_call.delta":
                    accumulator.add(event)
                elif event.type == "finish":
                    finish["reason"] = event.finish_reason
            tail = stream_filter.flush()
            if tail:
                await callbacks.emit("on_chunk", tail)

        stream_task = asyncio.ensure_future(consume())
        cancel_task = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait({stream_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            stream_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if stream_task not in done:
            LOGGER.debug("Cancellation requested; aborting in-flight request")
            stream_task.cancel()
            try:
                await stream_task
            except asyncio.CancelledError:
                pass
            except Exception:
                LOGGER.debug("Stream raised while being cancelled", exc_info=True)
            return None

        stream_task.result()
        if finish["reason"] == "length":
            LOGGER.debug("Completion stopped at the output token limit")
        return _RoundOutcome(
            raw_text="".join(raw_parts),
            visible_text=stream_filter.visible_text,
            native_calls=accumulator.calls(),
            finish_reason=finish["reason"],
        )

    async def _execute_tools(
        self,
        calls: Sequence[ToolCall],
        history: List[ChatMessage],
        callbacks: AgentCallbacks,
        token: CancellationToken,
    ) -> bool:
        """Run ``calls`` in order; returns ``True`` when the batch was cancelled."""

        for position, call in enumerate(calls):
            if token.cancelled:
                for remaining in calls[position:]:
                    await callbacks.emit(
                        "on_tool_activity",
                        ToolActivity(
                            call_id=remaining.call_id,
                            name=remaining.name,
                            status="error",
                            error=CANCELLED_TOOL_RESULT,
                        ),
                    )
                    history.append(_tool_message(remaining.call_id, CANCELLED_TOOL_RESULT))
                return True
            content = await self._execute_one(call, callbacks)
            history.append(_tool_message(call.call_id, content))
        return False

    async def _execute_one(self, call: ToolCall, callbacks: AgentCallbacks) -> str:
        try:
            arguments = parse_tool_arguments(call.arguments)
        except ValueError as exc:
            arguments = {}
            failure: str | None = str(exc)
        else:
            failure = None
        await callbacks.emit(
            "on_tool_activity",
            ToolActivity(call_id=call.call_id, name=call.name, arguments=dict(arguments), status="running"),
        )
        if failure is None:
            try:
                result = self._tool_executor(call.name, arguments)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:
                LOGGER.warning("Tool %s raised: %s", call.name, exc)
                failure = str(exc) or type(exc).__name__
            else:
                content = cap_tool_result("" if result is None else str(result), self._config.max_tool_result_chars)
                await callbacks.emit(
                    "on_tool_activity",
                    ToolActivity(
                        call_id=call.call_id,
                        name=call.name,
                        arguments=dict(arguments),
                        status="done",
                        result=content,
                    ),
                )
                return content
        await callbacks.emit(
            "on_tool_activity",
            ToolActivity(call_id=call.call_id, name=call.name, arguments=dict(arguments), status="error", error=failure),
        )
        return f"Error: {failure}"

    def _cancelled(self, history: List[ChatMessage], rounds: int, tool_calls: int) -> AgentRunResult:
        LOGGER.debug("Session cancelled after %d round(s)", rounds)
        return AgentRunResult(status="cancelled", messages=sanitize_messages(history), rounds=rounds, tool_calls=tool_calls)

    async def _log_exchange(
        self,
        session_id: str,
        started_at: str,
        user_message: str,
        responses: Sequence[str],
        tool_calls: int,
    ) -> None:
        if self._exchange_log is None:
            return
        entry = ExchangeLogEntry(
            session_id=session_id,
            session_started_at=started_at,
            model=str(getattr(getattr(self._client, "settings", None), "model", "") or ""),
            user_message=user_message,
            ai_response="\n\n".join(response.strip() for response in responses if response.strip()),
            tool_calls=tool_calls or None,
        )
        try:
            result = self._exchange_log.append(entry)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.warning("Exchange log rejected entry for session %s", session_id, exc_info=True)


def _tool_message(call_id: str, content: str) -> ChatMessage:
    return {"role": "tool", "tool_call_id": call_id, "content": content}


def _last_user_text(messages: Sequence[Mapping[str, Any]]) -> str:
    for message in reversed(messages):
        if message.get("role") == "user":
            return content_text(message.get("content"))
    return ""


def _tool_names(tools: Collection[Mapping[str, Any]]) -> List[str]:
    names: List[str] = []
    for tool in tools:
        function = tool.get("function")
        name = function.get("name") if isinstance(function, Mapping) else tool.get("name")
        if isinstance(name, str) and name:
            names.append(name)
    return names
