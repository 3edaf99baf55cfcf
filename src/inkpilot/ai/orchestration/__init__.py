"""Agent loop orchestration: sanitizing, tool-call detection, budgets and vision."""

from .archive_log import ArchiveEntry, ExchangeLogEntry, JsonlArchiveLog, NullArchiveLog, new_session_id
from .budget_manager import ContextBudgetManager
from .runner import AgentConfig, AgentRunner, AgentRunResult

# Tool call parsing (used by the runner)
from .tool_call_parser import (
    extract_tool_calls,
    normalize_tool_marker_text,
    parse_embedded_tool_calls,
    try_parse_json_block,
)
from .sanitizer import sanitize_messages
from .stream_filter import StreamFilter
from .vision import SCREENSHOT_SENTINEL, VisionInjector

__all__ = [
    "AgentConfig",
    "AgentRunner",
    "AgentRunResult",
    "ArchiveEntry",
    "ContextBudgetManager",
    "ExchangeLogEntry",
    "JsonlArchiveLog",
    "NullArchiveLog",
    "SCREENSHOT_SENTINEL",
    "StreamFilter",
    "VisionInjector",
    "extract_tool_calls",
    "new_session_id",
    "normalize_tool_marker_text",
    "parse_embedded_tool_calls",
    "sanitize_messages",
    "try_parse_json_block",
]
