"""Shared typing contracts for the agent core."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Literal, Mapping, MutableMapping

__all__ = [
    "ChatMessage",
    "ToolCall",
    "ToolActivity",
    "ToolActivityStatus",
    "ToolExecutor",
    "AgentCallbacks",
    "CancellationToken",
    "parse_tool_arguments",
    "copy_message",
    "SCREENSHOT_SENTINEL",
    "is_screenshot_result",
]

LOGGER = logging.getLogger(__name__)

# Messages travel in OpenAI chat wire format; local-only keys are tolerated
# until the sanitizer strips them.
ChatMessage = Dict[str, Any]

ToolActivityStatus = Literal["running", "done", "error"]

ToolExecutor = Callable[[str, Mapping[str, Any]], Awaitable[str]]

# Prefix of tool results that carry an image reference instead of text.
SCREENSHOT_SENTINEL = "__INKPILOT_SCREENSHOT__:"


@dataclass(slots=True, frozen=True)
class ToolCall:
    """A model-requested tool invocation.

    ``arguments`` is kept as the raw JSON text the model produced; only the
    executor boundary parses it.
    """

    call_id: str
    name: str
    arguments: str = "{}"

    def to_chat_param(self) -> ChatMessage:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }

    @classmethod
    def from_chat_param(cls, param: Mapping[str, Any]) -> "ToolCall":
        function = param.get("function") or {}
        return cls(
            call_id=str(param.get("id") or ""),
            name=str(function.get("name") or ""),
            arguments=str(function.get("arguments") or "{}"),
        )


@dataclass(slots=True)
class ToolActivity:
    """Reporting-only view of a tool call and its eventual outcome."""

    call_id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    status: ToolActivityStatus = "running"
    result: str | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status != "running"


def parse_tool_arguments(arguments: str | None) -> dict[str, Any]:
    """Parse tool arguments from JSON text.

    Raises:
        ValueError: If the text is not a JSON object.
    """

    if not arguments or arguments.strip() in ("", "{}"):
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in tool arguments: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"Arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


@dataclass(slots=True)
class AgentCallbacks:
    """Reporting hooks invoked by the agent loop.

    Every hook is optional. Exceptions raised by a hook are logged and never
    interrupt the session.
    """

    on_chunk: Callable[[str], Any] | None = None
    on_tool_activity: Callable[[ToolActivity], Any] | None = None
    on_done: Callable[[], Any] | None = None
    on_error: Callable[[Exception], Any] | None = None
    on_exhausted: Callable[[], Any] | None = None

    async def emit(self, name: str, *args: Any) -> None:
        callback = getattr(self, name, None)
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.debug("Agent callback %s raised", name, exc_info=True)


class CancellationToken:
    """Cooperative cancellation flag shared between a session and its caller."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def is_screenshot_result(message: Mapping[str, Any]) -> bool:
    content = message.get("content")
    return message.get("role") == "tool" and isinstance(content, str) and content.startswith(SCREENSHOT_SENTINEL)


def copy_message(message: Mapping[str, Any]) -> ChatMessage:
    """Return a shallow copy that can be edited without touching the source."""

    copied: MutableMapping[str, Any] = dict(message)
    content = copied.get("content")
    if isinstance(content, list):
        copied["content"] = [dict(part) if isinstance(part, Mapping) else part for part in content]
    return dict(copied)
