"""Tests for the JSONL archive and exchange logs."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import pytest

from inkpilot.ai.ai_types import SCREENSHOT_SENTINEL
from inkpilot.ai.orchestration.archive_log import (
    ArchiveEntry,
    ExchangeLogEntry,
    JsonlArchiveLog,
    NullArchiveLog,
    new_session_id,
    snapshot_messages,
)


def test_session_ids_are_base36_milliseconds() -> None:
    assert new_session_id(0) == "s_0"
    assert new_session_id(1.0) == "s_rs"
    assert new_session_id().startswith("s_")


@pytest.mark.asyncio
async def test_entries_are_appended_as_json_lines(tmp_path: Path) -> None:
    log = JsonlArchiveLog(tmp_path / "nested" / "archive.jsonl")
    await log.append(
        ArchiveEntry(
            session_id="s_1",
            round=2,
            estimated_tokens=95_000,
            summary="Goal: ship it.",
            messages=({"role": "user", "content": "task"},),
        )
    )
    await log.append({"kind": "note", "value": b"raw"})

    lines = log.path.read_text(encoding="utf-8").splitlines()
    entries = log.read_entries()

    assert len(lines) == 2
    assert entries[0]["kind"] == "archive"
    assert entries[0]["messages"] == [{"role": "user", "content": "task"}]
    assert entries[0]["timestamp"]
    assert entries[1] == {"kind": "note", "value": "raw"}
    assert log.location == str(tmp_path / "nested" / "archive.jsonl")


def test_corrupt_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "archive.jsonl"
    path.write_text('{"kind": "exchange"}\nnot json\n\n', encoding="utf-8")

    assert JsonlArchiveLog(path).read_entries() == [{"kind": "exchange"}]
    assert JsonlArchiveLog(tmp_path / "missing.jsonl").read_entries() == []


def test_write_failures_are_logged_not_raised(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    log = JsonlArchiveLog(tmp_path)

    with caplog.at_level(logging.WARNING, logger="inkpilot.ai.orchestration.archive_log"):
        log.write({"kind": "note"})

    assert "Failed to append entry" in caplog.text


@pytest.mark.asyncio
async def test_append_writes_off_the_event_loop_thread(tmp_path: Path) -> None:
    log = JsonlArchiveLog(tmp_path / "archive.jsonl")
    write = log.write
    writer_threads: list[int] = []

    def recording_write(entry):
        writer_threads.append(threading.get_ident())
        write(entry)

    log.write = recording_write

    await log.append({"kind": "note"})

    assert writer_threads and writer_threads[0] != threading.get_ident()
    assert log.read_entries() == [{"kind": "note"}]


def test_null_archive_accepts_anything() -> None:
    sink = NullArchiveLog()

    assert sink.append({"kind": "note"}) is None
    assert sink.location is None


def test_exchange_entry_omits_empty_tool_count() -> None:
    base = {
        "session_id": "s_1",
        "session_started_at": "2026-01-01T00:00:00+00:00",
        "model": "gpt-4o",
        "user_message": "hi",
        "ai_response": "hello",
    }

    plain = ExchangeLogEntry(**base).to_record()
    with_tools = ExchangeLogEntry(**base, tool_calls=3).to_record()

    assert "tool_calls" not in plain
    assert plain["kind"] == "exchange"
    assert with_tools["tool_calls"] == 3


def test_snapshot_replaces_image_payloads() -> None:
    history = [
        {"role": "user", "content": "inline data:image/png;base64,QUJDRA== here"},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "look"},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJDRA=="}},
            ],
        },
    ]

    snapshot = snapshot_messages(history)

    assert snapshot[0]["content"] == "inline [img] here"
    assert snapshot[1]["content"] == [{"type": "text", "text": "look"}, {"type": "text", "text": "[image]"}]
    assert history[1]["content"][1]["type"] == "image_url"


def test_snapshot_replaces_screenshot_tool_results() -> None:
    history = [
        {"role": "tool", "tool_call_id": "c1", "content": SCREENSHOT_SENTINEL + "iVBORw0KGgo"},
        {"role": "tool", "tool_call_id": "c2", "content": "file contents"},
    ]

    snapshot = snapshot_messages(history)

    assert snapshot[0] == {"role": "tool", "tool_call_id": "c1", "content": "[image]"}
    assert snapshot[1]["content"] == "file contents"
