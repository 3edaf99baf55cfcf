"""Context budget supervision for long agent sessions.

Over budget, the history is summarized by the model, archived, and rebuilt
around the summary. Under budget, a cheaper trim bounds the number of
retained tool rounds and injected screenshots.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Protocol, Sequence

from ..ai_types import ChatMessage, copy_message
from ..utils.tokens import estimate_message_tokens, message_text
from .archive_log import ArchiveEntry, ArchiveSink, snapshot_messages
from .sanitizer import sanitize_messages
from .vision import has_image_content, prune_vision_messages

__all__ = [
    "ContextBudgetManager",
    "SUMMARY_PLACEHOLDER",
    "BRIDGE_ACKNOWLEDGEMENT",
    "build_transcript",
]

LOGGER = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = (
    "You condense long agent sessions into briefs that let the same agent continue the work "
    "without the original history."
)
SUMMARY_INSTRUCTIONS = (
    "Write a dense technical brief of the session below with the sections Goal, Completed work, "
    "Current state and Remaining work. Keep file paths, identifiers, decisions and open problems "
    "verbatim. Do not address the user."
)
SUMMARY_PLACEHOLDER = (
    "[Summary unavailable: the summarization request failed. The full history is in the archive.]"
)
BRIDGE_ACKNOWLEDGEMENT = "Understood. I have the summary of the earlier work and will continue from the current state."
TRANSCRIPT_CHAR_LIMIT = 60_000
MESSAGE_CHAR_LIMIT = 4_000


class Summarizer(Protocol):
    async def complete(self, messages: Iterable[Mapping[str, Any]]) -> str:
        ...


@dataclass(slots=True)
class ContextBudgetManager:
    """Keeps a history inside the estimated token budget."""

    client: Summarizer | None = None
    archive: ArchiveSink | None = None
    token_budget: int = 90_000
    tail_messages: int = 8
    max_round_groups: int = 14
    last_estimate: int = 0
    compressions: int = 0
    archived: List[ArchiveEntry] = field(default_factory=list)

    def estimate(self, messages: Sequence[Mapping[str, Any]]) -> int:
        return estimate_message_tokens(messages)

    async def maybe_compress(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        session_id: str,
        round_index: int,
    ) -> List[ChatMessage]:
        """Return ``messages`` compressed or trimmed to fit the budget."""

        estimate = self.estimate(messages)
        self.last_estimate = estimate
        if estimate <= self.token_budget:
            return self.trim(messages)
        LOGGER.info(
            "Session %s round %d: estimated %d tokens exceeds budget %d; compressing",
            session_id,
            round_index,
            estimate,
            self.token_budget,
        )
        summary = await self._summarize(messages)
        entry = ArchiveEntry(
            session_id=session_id,
            round=round_index,
            estimated_tokens=estimate,
            summary=summary,
            messages=snapshot_messages(messages),
        )
        await self._archive(entry)
        rebuilt = sanitize_messages(self._rebuild(messages, summary, session_id=session_id, round_index=round_index))
        self.compressions += 1
        self.last_estimate = self.estimate(rebuilt)
        LOGGER.info(
            "Compressed history from %d to %d message(s) (~%d tokens)",
            len(messages),
            len(rebuilt),
            self.last_estimate,
        )
        return rebuilt

    def trim(self, messages: Sequence[Mapping[str, Any]]) -> List[ChatMessage]:
        """Drop the oldest tool rounds beyond ``max_round_groups`` and stale screenshots."""

        trimmed = prune_vision_messages(messages, keep_latest=1)
        group_starts = [
            index
            for index, message in enumerate(trimmed)
            if message.get("role") == "assistant" and message.get("tool_calls")
        ]
        excess = len(group_starts) - self.max_round_groups
        if excess > 0:
            dropped: set[int] = set()
            for start in group_starts[:excess]:
                dropped.add(start)
                cursor = start + 1
                while cursor < len(trimmed) and trimmed[cursor].get("role") == "tool":
                    dropped.add(cursor)
                    cursor += 1
            trimmed = [message for index, message in enumerate(trimmed) if index not in dropped]
            LOGGER.debug("Dropped %d old tool round(s)", excess)
        return sanitize_messages(trimmed)

    async def _summarize(self, messages: Sequence[Mapping[str, Any]]) -> str:
        if self.client is None:
            return SUMMARY_PLACEHOLDER
        request = [
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "user", "content": f"{SUMMARY_INSTRUCTIONS}\n\n<transcript>\n{build_transcript(messages)}\n</transcript>"},
        ]
        try:
            summary = await self.client.complete(request)
        except Exception:
            LOGGER.warning("Summarization request failed; using placeholder summary", exc_info=True)
            return SUMMARY_PLACEHOLDER
        summary = (summary or "").strip()
        return summary or SUMMARY_PLACEHOLDER

    async def _archive(self, entry: ArchiveEntry) -> None:
        self.archived.append(entry)
        if self.archive is None:
            return
        try:
            result = self.archive.append(entry)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOGGER.warning("Archive sink rejected entry for session %s", entry.session_id, exc_info=True)

    def _rebuild(
        self,
        messages: Sequence[Mapping[str, Any]],
        summary: str,
        *,
        session_id: str,
        round_index: int,
    ) -> List[ChatMessage]:
        system = [copy_message(message) for message in messages if message.get("role") == "system"]
        first_user_index = next(
            (index for index, message in enumerate(messages) if message.get("role") == "user"),
            None,
        )
        rebuilt: List[ChatMessage] = list(system)
        if first_user_index is not None:
            rebuilt.append(copy_message(messages[first_user_index]))
        rebuilt.append({"role": "user", "content": self._summary_message(summary, session_id, round_index)})
        rebuilt.append({"role": "assistant", "content": BRIDGE_ACKNOWLEDGEMENT})

        candidates = [
            index
            for index, message in enumerate(messages)
            if message.get("role") != "system" and index != first_user_index
        ]
        tail = [messages[index] for index in candidates[-self.tail_messages :]] if self.tail_messages > 0 else []
        tail = [message for message in tail if not has_image_content(message)]
        while tail and tail[0].get("role") == "tool":
            tail.pop(0)
        rebuilt.extend(copy_message(message) for message in tail)
        return rebuilt

    def _summary_message(self, summary: str, session_id: str, round_index: int) -> str:
        location = getattr(self.archive, "location", None)
        if location:
            pointer = f"The full earlier history is archived in {location} (session {session_id}, round {round_index})."
        else:
            pointer = f"The full earlier history was archived for session {session_id} at round {round_index}."
        return (
            "[Context compressed] The earlier part of this session was summarized to stay within the "
            f"context limit.\n\n{summary}\n\n{pointer}"
        )


def build_transcript(messages: Sequence[Mapping[str, Any]], *, limit: int = TRANSCRIPT_CHAR_LIMIT) -> str:
    """Render a bounded plain-text transcript for the summarization request."""

    lines: List[str] = []
    for message in messages:
        role = str(message.get("role") or "unknown").upper()
        text = message_text(message)
        if len(text) > MESSAGE_CHAR_LIMIT:
            text = text[:MESSAGE_CHAR_LIMIT] + " …[truncated]"
        calls = message.get("tool_calls") or ()
        call_text = ", ".join(
            f"{(call.get('function') or {}).get('name')}({(call.get('function') or {}).get('arguments', '')[:200]})"
            for call in calls
            if isinstance(call, Mapping)
        )
        if call_text:
            text = f"{text}\n[tool calls] {call_text}" if text else f"[tool calls] {call_text}"
        lines.append(f"{role}: {text}")
    transcript = "\n\n".join(lines)
    if len(transcript) <= limit:
        return transcript
    head = limit // 4
    return f"{transcript[:head]}\n\n…[earlier turns omitted]…\n\n{transcript[-(limit - head):]}"
