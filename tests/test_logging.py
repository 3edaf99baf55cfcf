"""Tests for the logging helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from inkpilot.utils import logging as logging_utils


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    previous_handlers, previous_level = list(root.handlers), root.level
    yield root
    logging_utils.reset_logging()
    for handler in previous_handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(previous_level)


def test_setup_logging_creates_rotating_file(tmp_path: Path, restore_root_logger: logging.Logger) -> None:
    log_path = logging_utils.setup_logging(logging.INFO, log_dir=tmp_path / "logs", console=False, force=True)

    logging.getLogger("inkpilot.tests").info("Logging smoke test")
    for handler in restore_root_logger.handlers:
        handler.flush()

    assert log_path == tmp_path / "logs" / "inkpilot.log"
    assert logging_utils.get_log_path() == log_path
    assert "Logging smoke test" in log_path.read_text(encoding="utf-8")


def test_second_setup_without_force_is_a_no_op(tmp_path: Path, restore_root_logger: logging.Logger) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "one", console=False, force=True)
    second = logging_utils.setup_logging(log_dir=tmp_path / "two", console=False)

    assert second == first
    assert not (tmp_path / "two").exists()


def test_log_dir_env_override(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, restore_root_logger: logging.Logger
) -> None:
    monkeypatch.setenv("INKPILOT_LOG_DIR", str(tmp_path / "from-env"))

    log_path = logging_utils.setup_logging(console=False, force=True)

    assert log_path.parent == tmp_path / "from-env"


def test_credentials_are_masked_in_written_records(tmp_path: Path, restore_root_logger: logging.Logger) -> None:
    log_path = logging_utils.setup_logging(logging.DEBUG, log_dir=tmp_path, console=False, force=True)

    logging.getLogger("inkpilot.tests").debug("headers=%s", {"Authorization": "Bearer tid=abcdef123456;exp=1"})
    logging.getLogger("inkpilot.tests").debug("credential gho_0123456789abcdef rejected")
    for handler in restore_root_logger.handlers:
        handler.flush()

    contents = log_path.read_text(encoding="utf-8")
    assert "abcdef123456" not in contents
    assert "gho_0123456789abcdef" not in contents
    assert "Bearer ***" in contents


def test_mask_credentials_leaves_plain_text() -> None:
    assert logging_utils.mask_credentials("no secrets here") == "no secrets here"
    assert logging_utils.mask_credentials("token: ghu_abcdefghijkl") == "token: ***"


def test_reset_logging_removes_installed_handlers(tmp_path: Path, restore_root_logger: logging.Logger) -> None:
    logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)

    logging_utils.reset_logging()

    assert logging_utils.get_log_path() is None
    assert not any(
        isinstance(item, logging_utils.CredentialMaskFilter)
        for handler in restore_root_logger.handlers
        for item in handler.filters
    )
