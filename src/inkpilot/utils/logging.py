"""Logging setup for hosts embedding the Inkpilot agent core.

Records pass through :class:`CredentialMaskFilter` before reaching any
handler, so bearer headers, session tokens and GitHub credentials logged by
the client's debug payload dumps never land on disk in clear text.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

__all__ = ["setup_logging", "get_log_path", "reset_logging", "CredentialMaskFilter", "mask_credentials"]

LOG_FILE_NAME = "inkpilot.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_DEFAULT_LOG_DIR = Path.home() / ".inkpilot" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_CREDENTIAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=;:-]{8,}"),
    re.compile(r"(?i)(authorization['\"]?\s*[:=]\s*['\"]?token\s+)\S{8,}"),
    re.compile(r"()\b(?:gh[oupsr]|github_pat)_[A-Za-z0-9_]{8,}"),
    re.compile(r"()\btid=[A-Za-z0-9;:=._-]{8,}"),
)
_MASK = "***"

_log_path: Path | None = None


def mask_credentials(text: str) -> str:
    """Replace anything that looks like a credential in ``text``."""

    for pattern in _CREDENTIAL_PATTERNS:
        text = pattern.sub(lambda match: match.group(1) + _MASK, text)
    return text


class CredentialMaskFilter(logging.Filter):
    """Renders each record once and masks credentials in the final message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = mask_credentials(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler (plus stderr when ``console``) on the root logger.

    A second call is a no-op returning the active path unless ``force`` is set.
    """

    global _log_path
    if _log_path is not None and not force:
        return _log_path

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILE_NAME

    logging.basicConfig(
        level=level,
        handlers=_build_handlers(log_path, level, console=console, max_bytes=max_bytes, backup_count=backup_count),
        force=True,
    )
    logging.captureWarnings(True)
    _quiet_libraries(level)

    _log_path = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging` ran."""

    return _log_path


def reset_logging() -> None:
    """Detach and close the handlers installed by :func:`setup_logging`."""

    global _log_path
    root = logging.getLogger()
    for handler in list(root.handlers):
        if any(isinstance(item, CredentialMaskFilter) for item in handler.filters):
            root.removeHandler(handler)
            handler.close()
    _log_path = None


def _build_handlers(
    log_path: Path,
    level: int,
    *,
    console: bool,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    mask = CredentialMaskFilter()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(mask)
    return handlers


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get("INKPILOT_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()


def _quiet_libraries(root_level: int) -> None:
    # HTTP client chatter drowns the agent loop at DEBUG.
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
