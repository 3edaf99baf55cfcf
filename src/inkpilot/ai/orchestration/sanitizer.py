"""Structural sanitizer keeping a growing history valid for the chat endpoint.

The endpoint rejects a request wholesale when the message array breaks its
contract: a ``tool`` message must answer a call from the assistant turn
directly above it, every assistant tool call must be answered before the
next turn, and some backends refuse repeated ``user``/``assistant`` roles or
unknown keys. :func:`sanitize_messages` rewrites a history so that all of
these hold. It is pure and idempotent and runs before every request.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Sequence

from ..ai_types import ChatMessage, ToolCall

__all__ = [
    "WIRE_FIELDS",
    "sanitize_messages",
    "strip_local_fields",
    "drop_orphan_tool_messages",
    "merge_consecutive_roles",
    "drop_dangling_tool_calls",
    "merge_content",
]

LOGGER = logging.getLogger(__name__)

WIRE_FIELDS: frozenset[str] = frozenset({"role", "content", "name", "tool_calls", "tool_call_id"})
_MERGEABLE_ROLES = frozenset({"user", "assistant"})


def sanitize_messages(messages: Sequence[Mapping[str, Any]]) -> List[ChatMessage]:
    """Return a copy of ``messages`` that satisfies the endpoint's structure rules."""

    cleaned = strip_local_fields(messages)
    cleaned = drop_orphan_tool_messages(cleaned)
    cleaned = merge_consecutive_roles(cleaned)
    cleaned = drop_dangling_tool_calls(cleaned)
    if len(cleaned) != len(messages):
        LOGGER.debug("Sanitizer reshaped history: %d -> %d message(s)", len(messages), len(cleaned))
    return cleaned


def strip_local_fields(messages: Iterable[Mapping[str, Any]]) -> List[ChatMessage]:
    """Drop display-only keys and normalize tool calls to the wire shape."""

    stripped: List[ChatMessage] = []
    for message in messages:
        clean: ChatMessage = {key: value for key, value in message.items() if key in WIRE_FIELDS}
        clean.setdefault("content", "")
        if clean["content"] is None:
            clean["content"] = ""
        elif isinstance(clean["content"], list):
            clean["content"] = [dict(part) for part in clean["content"] if isinstance(part, Mapping)]
        if clean.get("role") == "assistant" and "tool_calls" in clean:
            calls = _normalize_tool_calls(clean.get("tool_calls"))
            if calls:
                clean["tool_calls"] = calls
            else:
                clean.pop("tool_calls")
        elif "tool_calls" in clean:
            clean.pop("tool_calls")
        if clean.get("role") != "tool":
            clean.pop("tool_call_id", None)
        stripped.append(clean)
    return stripped


def drop_orphan_tool_messages(messages: Sequence[ChatMessage]) -> List[ChatMessage]:
    """Remove tool messages that do not answer an open call of the latest assistant."""

    result: List[ChatMessage] = []
    open_ids: set[str] = set()
    for message in messages:
        role = message.get("role")
        if role == "tool":
            call_id = message.get("tool_call_id")
            if call_id in open_ids:
                open_ids.discard(call_id)
                result.append(message)
            else:
                LOGGER.debug("Dropping orphan tool message for call %s", call_id)
            continue
        if role == "assistant":
            open_ids = {call["id"] for call in message.get("tool_calls") or ()}
        else:
            open_ids = set()
        result.append(message)
    return result


def merge_consecutive_roles(messages: Sequence[ChatMessage]) -> List[ChatMessage]:
    """Fold adjacent ``user``/``user`` and ``assistant``/``assistant`` pairs."""

    result: List[ChatMessage] = []
    for message in messages:
        previous = result[-1] if result else None
        role = message.get("role")
        if previous is None or role not in _MERGEABLE_ROLES or previous.get("role") != role:
            result.append(message)
            continue
        merged: ChatMessage = dict(previous)
        merged["content"] = merge_content(previous.get("content"), message.get("content"))
        if role == "assistant":
            merged.pop("tool_calls", None)
            if message.get("tool_calls"):
                merged["tool_calls"] = message["tool_calls"]
        if message.get("name"):
            merged["name"] = message["name"]
        result[-1] = merged
    return result


def drop_dangling_tool_calls(messages: Sequence[ChatMessage]) -> List[ChatMessage]:
    """Truncate at any assistant whose calls are not all answered right below it.

    A partially answered call batch is rejected by the endpoint, so the
    offending assistant turn and everything after it are removed. The scan
    repeats from the end until the history is clean.
    """

    result = list(messages)
    while True:
        cut = _find_dangling_from_end(result)
        if cut is None:
            return result
        LOGGER.debug("Removing dangling tool calls at index %d (%d message(s) dropped)", cut, len(result) - cut)
        result = result[:cut]


def merge_content(first: Any, second: Any) -> Any:
    """Concatenate two message contents, keeping multipart structure when present."""

    if isinstance(first, list) or isinstance(second, list):
        return _as_parts(first) + _as_parts(second)
    left = first or ""
    right = second or ""
    if not left:
        return right
    if not right:
        return left
    return f"{left}\n\n{right}"


def _find_dangling_from_end(messages: Sequence[ChatMessage]) -> int | None:
    dangling: int | None = None
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.get("role") != "assistant" or not message.get("tool_calls"):
            continue
        expected = {call["id"] for call in message["tool_calls"]}
        answered: set[str] = set()
        for follower in messages[index + 1 :]:
            if follower.get("role") != "tool":
                break
            answered.add(follower.get("tool_call_id"))
        if not expected <= answered:
            dangling = index
    return dangling


def _normalize_tool_calls(raw_calls: Any) -> List[ChatMessage]:
    if not isinstance(raw_calls, (list, tuple)):
        return []
    calls: List[ChatMessage] = []
    for raw in raw_calls:
        if isinstance(raw, ToolCall):
            call = raw
        elif isinstance(raw, Mapping):
            call = ToolCall.from_chat_param(raw)
        else:
            continue
        if not call.call_id or not call.name:
            continue
        calls.append(call.to_chat_param())
    return calls


def _as_parts(content: Any) -> List[ChatMessage]:
    if isinstance(content, list):
        return [dict(part) for part in content]
    if not content:
        return []
    return [{"type": "text", "text": str(content)}]
