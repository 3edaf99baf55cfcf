"""Incremental filter hiding inline tool-call markup from streamed answer text."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

__all__ = ["MarkupPair", "DEFAULT_MARKUP", "StreamFilter"]


@dataclass(slots=True, frozen=True)
class MarkupPair:
    opening: str
    closing: str


DEFAULT_MARKUP: tuple[MarkupPair, ...] = (
    MarkupPair("<tool_call>", "</tool_call>"),
    MarkupPair("<function_call>", "</function_call>"),
    MarkupPair("<|tool_calls_begin|>", "<|tool_calls_end|>"),
    MarkupPair("<|tool_call_begin|>", "<|tool_call_end|>"),
    MarkupPair("<invoke ", "</invoke>"),
    MarkupPair("<function=", "</function>"),
)


class StreamFilter:
    """Two-state machine (outside / inside a markup block) over text deltas.

    Outside a block, a run starting with ``<`` that may still grow into an
    opening marker is held back until it is confirmed as plain text or as
    markup. Inside a block everything is dropped until the matching closing
    marker. Per-chunk work is bounded by the marker lengths.
    """

    def __init__(self, markup: Sequence[MarkupPair] = DEFAULT_MARKUP) -> None:
        self._markup = tuple(markup)
        self._openings = [pair.opening.lower() for pair in self._markup]
        self._leads = frozenset(opening[0] for opening in self._openings if opening)
        self._pending = ""
        self._active: MarkupPair | None = None
        self._visible: List[str] = []
        self.saw_markup = False

    @property
    def inside_markup(self) -> bool:
        return self._active is not None

    @property
    def visible_text(self) -> str:
        return "".join(self._visible)

    def feed(self, chunk: str) -> str:
        """Consume one delta and return the text that is safe to show."""

        if not chunk:
            return ""
        text = self._pending + chunk
        self._pending = ""
        emitted: List[str] = []
        while text:
            if self._active is not None:
                text = self._consume_inside(text)
                continue
            marker_start = self._find_lead(text)
            if marker_start < 0:
                emitted.append(text)
                break
            emitted.append(text[:marker_start])
            rest = text[marker_start:]
            lowered = rest.lower()
            opened = next(
                (pair for pair, opening in zip(self._markup, self._openings) if lowered.startswith(opening)),
                None,
            )
            if opened is not None:
                self._active = opened
                self.saw_markup = True
                text = rest[len(opened.opening) :]
                continue
            if any(opening.startswith(lowered) for opening in self._openings):
                self._pending = rest
                break
            emitted.append(rest[0])
            text = rest[1:]
        visible = "".join(emitted)
        if visible:
            self._visible.append(visible)
        return visible

    def flush(self) -> str:
        """Finish the stream: release a held partial marker, drop an unclosed block."""

        pending = self._pending
        self._pending = ""
        if self._active is not None:
            self._active = None
            return ""
        if pending:
            self._visible.append(pending)
        return pending

    def _find_lead(self, text: str) -> int:
        positions = [text.find(lead) for lead in self._leads]
        found = [position for position in positions if position >= 0]
        return min(found) if found else -1

    def _consume_inside(self, text: str) -> str:
        assert self._active is not None
        closing = self._active.closing
        end = text.lower().find(closing.lower())
        if end < 0:
            # Keep only enough of the tail to spot a closing marker split across chunks.
            self._pending = text[-(len(closing) - 1) :] if len(closing) > 1 else ""
            return ""
        self._active = None
        return text[end + len(closing) :]
