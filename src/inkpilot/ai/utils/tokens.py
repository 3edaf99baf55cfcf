"""Token estimation utilities for conversation histories."""

from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable, Mapping

from ..ai_types import is_screenshot_result

# Average characters per token for English prose (GPT-style tokenization)
CHARS_PER_TOKEN = 4.0

IMAGE_PLACEHOLDER = "[img]"

DATA_URL_RE = re.compile(r"data:[\w.+-]+/[\w.+-]+;base64,[A-Za-z0-9+/=_-]+")


def strip_data_urls(text: str) -> str:
    """Replace inline base64 data URLs with a short placeholder."""

    if not text or "base64," not in text:
        return text
    return DATA_URL_RE.sub(IMAGE_PLACEHOLDER, text)


def message_text(message: Mapping[str, Any]) -> str:
    """Return the text of a message with every image reduced to the placeholder."""

    if is_screenshot_result(message):
        return IMAGE_PLACEHOLDER
    return strip_data_urls(content_text(message.get("content")))


def serialized_length(message: Mapping[str, Any]) -> int:
    """Return the character length a message contributes to the context.

    Text content counts verbatim, image parts, base64 payloads and screenshot
    tool results count as a short placeholder, and tool calls count as their
    JSON encoding.
    """

    length = len(message_text(message))
    tool_calls = message.get("tool_calls")
    if tool_calls:
        try:
            length += len(json.dumps(tool_calls, ensure_ascii=False))
        except (TypeError, ValueError):
            length += len(str(tool_calls))
    return length


def estimate_message_tokens(messages: Iterable[Mapping[str, Any]]) -> int:
    """Crude context estimate: total serialized length divided by four.

    A conservative overestimate is preferred to an undercount near the limit.
    """

    total = sum(serialized_length(message) for message in messages)
    if total <= 0:
        return 0
    return math.ceil(total / CHARS_PER_TOKEN)


def content_text(content: Any) -> str:
    """Flatten string or multipart content into plain text."""

    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        pieces: list[str] = []
        for part in content:
            if not isinstance(part, Mapping):
                continue
            if part.get("type") == "image_url":
                pieces.append(IMAGE_PLACEHOLDER)
            else:
                pieces.append(str(part.get("text") or ""))
        return " ".join(piece for piece in pieces if piece)
    return str(content)


__all__ = [
    "CHARS_PER_TOKEN",
    "IMAGE_PLACEHOLDER",
    "estimate_message_tokens",
    "serialized_length",
    "content_text",
    "message_text",
    "strip_data_urls",
]
