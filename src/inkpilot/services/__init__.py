"""Service layer helpers (settings persistence, secrets)."""

from .settings import SecretVault, Settings, SettingsStore, redact_secret

__all__ = ["Settings", "SettingsStore", "SecretVault", "redact_secret"]
