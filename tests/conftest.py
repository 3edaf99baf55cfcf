"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from inkpilot.services.settings import SecretVault, SettingsStore


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("INKPILOT_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


@pytest.fixture
def sample_history() -> list[dict]:
    return [
        {"role": "system", "content": "You are a writing assistant."},
        {"role": "user", "content": "Summarize a.md"},
        {
            "role": "assistant",
            "content": "",
            "tool_calls": [
                {"id": "call_1", "type": "function", "function": {"name": "read_file", "arguments": "{\"path\": \"a.md\"}"}}
            ],
        },
        {"role": "tool", "tool_call_id": "call_1", "content": "hello"},
        {"role": "assistant", "content": "The file says hello."},
    ]
