"""Append-only JSONL sinks for compression archives and exchange logs."""

from __future__ import annotations

import asyncio
import json
import logging
import string
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Tuple

from ...utils import logging as logging_utils
from ..ai_types import is_screenshot_result
from ..utils.tokens import strip_data_urls

__all__ = [
    "ArchiveEntry",
    "ExchangeLogEntry",
    "ArchiveSink",
    "JsonlArchiveLog",
    "NullArchiveLog",
    "new_session_id",
    "snapshot_messages",
]

LOGGER = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def _default_archive_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "archive"
    return Path.home() / ".inkpilot" / "logs" / "archive"


def new_session_id(now: float | None = None) -> str:
    """Short session id derived from the current time in milliseconds."""

    millis = int((time.time() if now is None else now) * 1000)
    digits = ""
    while True:
        millis, remainder = divmod(millis, 36)
        digits = _BASE36[remainder] + digits
        if millis == 0:
            break
    return f"s_{digits}"


def _iso_now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(slots=True, frozen=True)
class ArchiveEntry:
    """Snapshot of a history taken right before it was compressed."""

    session_id: str
    round: int
    estimated_tokens: int
    summary: str
    messages: Tuple[Mapping[str, Any], ...]
    timestamp: str = field(default_factory=_iso_now)

    def to_record(self) -> Dict[str, Any]:
        return {
            "kind": "archive",
            "session_id": self.session_id,
            "round": self.round,
            "estimated_tokens": self.estimated_tokens,
            "summary": self.summary,
            "messages": [dict(message) for message in self.messages],
            "timestamp": self.timestamp,
        }


@dataclass(slots=True, frozen=True)
class ExchangeLogEntry:
    """One completed user/assistant exchange."""

    session_id: str
    session_started_at: str
    model: str
    user_message: str
    ai_response: str
    tool_calls: int | None = None
    timestamp: str = field(default_factory=_iso_now)

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {
            "kind": "exchange",
            "session_id": self.session_id,
            "session_started_at": self.session_started_at,
            "timestamp": self.timestamp,
            "model": self.model,
            "user_message": self.user_message,
            "ai_response": self.ai_response,
        }
        if self.tool_calls:
            record["tool_calls"] = self.tool_calls
        return record


class ArchiveSink(Protocol):
    """Anything accepting entries; ``append`` may be sync or async."""

    def append(self, entry: Any) -> Any:
        ...


class NullArchiveLog:
    """No-op sink used when archiving is disabled."""

    location: str | None = None

    def append(self, entry: Any) -> None:
        return


class JsonlArchiveLog:
    """Writes one JSON object per line; failures are logged and ignored."""

    def __init__(self, path: Path | str | None = None, *, file_name: str = "archive.jsonl") -> None:
        self.path = Path(path) if path else _default_archive_dir() / file_name

    @property
    def location(self) -> str:
        return str(self.path)

    async def append(self, entry: ArchiveEntry | ExchangeLogEntry | Mapping[str, Any]) -> None:
        """Write ``entry`` on a worker thread; see :meth:`write`."""

        await asyncio.to_thread(self.write, entry)

    def write(self, entry: ArchiveEntry | ExchangeLogEntry | Mapping[str, Any]) -> None:
        record = entry.to_record() if hasattr(entry, "to_record") else dict(entry)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                json.dump(_safe_json(record), handle, ensure_ascii=False)
                handle.write("\n")
        except OSError:
            LOGGER.warning("Failed to append entry to %s", self.path, exc_info=True)

    def read_entries(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        entries: List[Dict[str, Any]] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError:
                    LOGGER.debug("Skipping corrupt archive line in %s", self.path)
        return entries


def snapshot_messages(messages: Sequence[Mapping[str, Any]]) -> Tuple[Dict[str, Any], ...]:
    """Copy a history for archiving with image payloads replaced by placeholders."""

    snapshot: List[Dict[str, Any]] = []
    for message in messages:
        copied = dict(message)
        content = copied.get("content")
        if is_screenshot_result(copied):
            copied["content"] = "[image]"
        elif isinstance(content, str):
            copied["content"] = strip_data_urls(content)
        elif isinstance(content, list):
            parts: List[Any] = []
            for part in content:
                if isinstance(part, Mapping) and part.get("type") == "image_url":
                    parts.append({"type": "text", "text": "[image]"})
                elif isinstance(part, Mapping):
                    parts.append({key: strip_data_urls(value) if isinstance(value, str) else value for key, value in part.items()})
                else:
                    parts.append(part)
            copied["content"] = parts
        snapshot.append(copied)
    return tuple(snapshot)


def _safe_json(value: Any, *, depth: int = 0) -> Any:
    if depth > 6:
        return repr(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _safe_json(val, depth=depth + 1) for key, val in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_json(item, depth=depth + 1) for item in value]
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return repr(value)
