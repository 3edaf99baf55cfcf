"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

from abc import ABC, abstractmethod
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

from ..ai.auth import DEFAULT_EXCHANGE_URL
from ..ai.client import DEFAULT_BASE_URL, ClientSettings
from ..ai.orchestration.archive_log import JsonlArchiveLog, NullArchiveLog
from ..ai.orchestration.budget_manager import ContextBudgetManager, Summarizer
from ..ai.orchestration.runner import MAX_ROUNDS, MAX_TOOL_RESULT_CHARS, AgentConfig
from ..utils import logging as logging_utils

__all__ = [
    "Settings",
    "SettingsStore",
    "SecretVault",
    "SecretProvider",
    "FernetSecretProvider",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".inkpilot"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


def _env_flag(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


# Environment variable -> (settings field, parser). Parsers raise ValueError on bad input.
_ENV_OVERRIDES: Mapping[str, tuple[str, Callable[[str], Any]]] = {
    "INKPILOT_API_KEY": ("api_key", str),
    "INKPILOT_BASE_URL": ("base_url", str),
    "INKPILOT_MODEL": ("model", str),
    "INKPILOT_ORGANIZATION": ("organization", str),
    "INKPILOT_TOKEN_EXCHANGE_URL": ("token_exchange_url", str),
    "INKPILOT_ARCHIVE_PATH": ("archive_path", str),
    "INKPILOT_DEBUG_LOGGING": ("debug_logging", _env_flag),
    "INKPILOT_REQUEST_TIMEOUT": ("request_timeout", float),
    "INKPILOT_TEMPERATURE": ("temperature", float),
    "INKPILOT_MAX_ROUNDS": ("max_rounds", int),
    "INKPILOT_CONTEXT_TOKEN_BUDGET": ("context_token_budget", int),
    "INKPILOT_MAX_OUTPUT_TOKENS": ("max_output_tokens", int),
}
# Secret fields are stored only as ciphertext under "<name>_ciphertext".
_SECRET_FIELDS: tuple[str, ...] = ("api_key", "github_token")


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    github_token: str = ""
    model: str = "gpt-4o"
    temperature: float = 0.7
    max_output_tokens: int = 4096
    organization: str | None = None
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 1.0
    retry_max_seconds: float = 4.0
    token_exchange_url: str = DEFAULT_EXCHANGE_URL
    token_safety_margin: float = 60.0
    default_headers: dict[str, str] = field(default_factory=dict)
    max_rounds: int = MAX_ROUNDS
    context_token_budget: int = 90_000
    tail_messages: int = 8
    max_round_groups: int = 14
    max_tool_result_chars: int = MAX_TOOL_RESULT_CHARS
    archive_path: str | None = None
    debug_logging: bool = False

    def client_settings(self) -> ClientSettings:
        """Derive the AI client configuration."""

        return ClientSettings(
            base_url=self.base_url,
            api_key=self.api_key,
            model=self.model,
            organization=self.organization,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            default_headers=dict(self.default_headers),
            debug_logging=self.debug_logging,
        )

    def configure_logging(self, *, log_dir: Path | str | None = None, force: bool = False) -> Path:
        """Install the rotating log handlers at the level implied by ``debug_logging``."""

        level = logging.DEBUG if self.debug_logging else logging.INFO
        log_path = logging_utils.setup_logging(level, log_dir=log_dir, force=force)
        LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))
        return log_path

    def agent_config(self) -> AgentConfig:
        return AgentConfig(
            max_rounds=self.max_rounds,
            max_tool_result_chars=self.max_tool_result_chars,
        )

    def budget_manager(self, client: Summarizer | None = None) -> ContextBudgetManager:
        """Build a budget manager archiving to ``archive_path`` when configured."""

        archive = JsonlArchiveLog(self.archive_path) if self.archive_path else NullArchiveLog()
        return ContextBudgetManager(
            client=client,
            archive=archive,
            token_budget=self.context_token_budget,
            tail_messages=self.tail_messages,
            max_round_groups=self.max_round_groups,
        )


class SecretProvider(ABC):
    """Interface for encrypting and decrypting sensitive strings."""

    name: str = "unknown"

    @abstractmethod
    def encrypt(self, secret: str) -> str:
        """Return an encoded representation of ``secret`` suitable for storage."""

    @abstractmethod
    def decrypt(self, token: str) -> str:
        """Return the plaintext representation of ``token``."""


class FernetSecretProvider(SecretProvider):
    """Fernet encryption keyed by a file created on first use (mode 0600)."""

    name = "fernet"

    def __init__(self, key_path: Path | None = None) -> None:
        self.key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._cipher: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        return self._fernet().encrypt(secret.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        return self._fernet().decrypt(token.encode("ascii")).decode("utf-8")

    def _fernet(self) -> Fernet:
        if self._cipher is None:
            self._cipher = Fernet(_read_or_create_key(self.key_path))
        return self._cipher


def _read_or_create_key(path: Path) -> bytes:
    """Return the key stored at ``path``, creating it exclusively when absent.

    ``O_EXCL`` lets two processes racing on first launch agree on one key: the
    loser reads the winner's file instead of overwriting it.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        descriptor = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        return path.read_bytes().strip()
    key = Fernet.generate_key()
    with os.fdopen(descriptor, "wb") as handle:
        handle.write(key)
    LOGGER.info("Created settings encryption key at %s", path)
    return key


class SecretVault:
    """Encrypts and decrypts sensitive strings for settings persistence."""

    def __init__(self, *, key_path: Path | None = None, provider: SecretProvider | None = None) -> None:
        self._provider = provider or FernetSecretProvider(key_path or (_SETTINGS_DIR / "settings.key"))

    @property
    def strategy(self) -> str:
        return self._provider.name

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        return f"{self._provider.name}:{self._provider.encrypt(secret)}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if not payload:
            prefix, payload = self._provider.name, token
        if prefix != self._provider.name:
            raise ValueError(f"Unsupported secret backend {prefix!r}")
        try:
            return self._provider.decrypt(payload)
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime and environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            secrets, migrated = self._decrypt_secrets(payload)
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            if secrets:
                settings = replace(settings, **secrets)
            if migrated or payload.get("version") != _SETTINGS_VERSION:
                try:
                    self.save(settings)
                except OSError as exc:  # pragma: no cover
                    LOGGER.warning("Failed to migrate settings payload: %s", exc)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        self._write_payload(self._serialize(settings))
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def clear_secret(self, name: str) -> bool:
        """Remove one stored secret, leaving every other persisted value untouched.

        Works on the raw payload so environment and runtime overrides are never
        written back. Returns ``False`` when nothing was stored under ``name``.
        """

        if name not in _SECRET_FIELDS:
            raise ValueError(f"Unknown secret field: {name}")
        payload = self._read_payload()
        removed = [key for key in (name, f"{name}_ciphertext") if payload.pop(key, None) is not None]
        if not removed:
            return False
        self._write_payload(payload)
        LOGGER.debug("Cleared %s from %s", name, self._path)
        return True

    def _write_payload(self, payload: Mapping[str, Any]) -> None:
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)

    def _serialize(self, settings: Settings) -> Dict[str, Any]:
        data = asdict(settings)
        for name in _SECRET_FIELDS:
            plaintext = data.pop(name, "") or ""
            if not plaintext:
                continue
            try:
                data[f"{name}_ciphertext"] = self._vault.encrypt(plaintext)
            except Exception as exc:  # pragma: no cover
                LOGGER.warning("Failed to encrypt %s: %s", name, exc)
        data["version"] = _SETTINGS_VERSION
        data["secret_backend"] = self._vault.strategy
        return data

    def _decrypt_secrets(self, payload: Dict[str, Any]) -> tuple[Dict[str, str], bool]:
        secrets: Dict[str, str] = {}
        migrated = False
        for name in _SECRET_FIELDS:
            ciphertext = payload.pop(f"{name}_ciphertext", None)
            legacy_plaintext = payload.pop(name, None)
            if ciphertext:
                try:
                    secrets[name] = self._vault.decrypt(ciphertext)
                except ValueError as exc:
                    LOGGER.warning("Unable to decrypt %s: %s", name, exc)
            elif legacy_plaintext:
                LOGGER.info("Detected plaintext %s; migrating to encrypted storage.", name)
                secrets[name] = str(legacy_plaintext)
                migrated = True
        return secrets, migrated

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(self, settings: Settings, overrides: Mapping[str, Any], *, source: str) -> Settings:
        allowed = {item.name for item in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, (field_name, parse) in _ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw is None:
                continue
            try:
                overrides[field_name] = parse(raw)
            except ValueError:
                LOGGER.warning("Ignoring %s=%r: expected %s", env_name, raw, getattr(parse, "__name__", "value"))
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)} - set(_SECRET_FIELDS)
    return {key: value for key, value in payload.items() if key in allowed}


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
