"""Screenshot handling between tool results and the next request.

Tools that capture an image return ``SCREENSHOT_SENTINEL`` followed by the
image reference (a data URL, an http(s) URL or bare base64 PNG data). The
endpoint rejects multipart content inside ``tool`` messages, so the image is
moved into a single ``user`` message placed after the tool results.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Sequence

from ..ai_types import SCREENSHOT_SENTINEL, ChatMessage, copy_message

__all__ = [
    "SCREENSHOT_SENTINEL",
    "VISION_INSTRUCTION",
    "SCREENSHOT_PLACEHOLDER",
    "NO_VISION_ACKNOWLEDGEMENT",
    "VisionInjector",
    "is_vision_message",
    "has_image_content",
    "prune_vision_messages",
    "image_url_from_payload",
]

LOGGER = logging.getLogger(__name__)

VISION_INSTRUCTION = (
    "Screenshot captured by the previous tool call. Inspect it to verify the current state before continuing."
)
SCREENSHOT_PLACEHOLDER = "[Screenshot captured; the image follows in the next message.]"
NO_VISION_ACKNOWLEDGEMENT = (
    "Screenshot captured, but the active model cannot view images. Rely on textual tools to inspect the result."
)


def has_image_content(message: Mapping[str, Any]) -> bool:
    content = message.get("content")
    if not isinstance(content, list):
        return False
    return any(isinstance(part, Mapping) and part.get("type") == "image_url" for part in content)


def is_vision_message(message: Mapping[str, Any]) -> bool:
    """Return ``True`` for user messages created by :class:`VisionInjector`."""

    if message.get("role") != "user" or not has_image_content(message):
        return False
    return any(
        isinstance(part, Mapping) and part.get("type") == "text" and part.get("text") == VISION_INSTRUCTION
        for part in message["content"]
    )


def prune_vision_messages(messages: Sequence[Mapping[str, Any]], *, keep_latest: int = 0) -> List[ChatMessage]:
    """Drop injected vision messages except the newest ``keep_latest`` ones."""

    positions = [index for index, message in enumerate(messages) if is_vision_message(message)]
    keep = set(positions[-keep_latest:]) if keep_latest > 0 else set()
    return [
        copy_message(message)
        for index, message in enumerate(messages)
        if index in keep or not is_vision_message(message)
    ]


def image_url_from_payload(payload: str) -> str:
    reference = payload.strip()
    if reference.startswith(("data:", "http://", "https://")):
        return reference
    return f"data:image/png;base64,{reference}"


class VisionInjector:
    """Moves sentinel-tagged tool results into one trailing image message."""

    def __init__(self, *, sentinel: str = SCREENSHOT_SENTINEL) -> None:
        self._sentinel = sentinel

    def apply(self, messages: Sequence[Mapping[str, Any]], *, supports_vision: bool) -> List[ChatMessage]:
        result: List[ChatMessage] = []
        latest_payload: str | None = None
        for message in messages:
            copied = copy_message(message)
            content = copied.get("content")
            if copied.get("role") == "tool" and isinstance(content, str) and content.startswith(self._sentinel):
                latest_payload = content[len(self._sentinel) :].strip() or latest_payload
                copied["content"] = SCREENSHOT_PLACEHOLDER if supports_vision else NO_VISION_ACKNOWLEDGEMENT
            result.append(copied)
        if latest_payload is None or not supports_vision:
            return result
        result = [message for message in result if not is_vision_message(message)]
        result.append(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": VISION_INSTRUCTION},
                    {"type": "image_url", "image_url": {"url": image_url_from_payload(latest_payload)}},
                ],
            }
        )
        LOGGER.debug("Injected screenshot message after %d message(s)", len(result) - 1)
        return result
