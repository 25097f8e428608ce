"""Service layer helpers (settings persistence)."""

from .settings import SecretVault, Settings, SettingsStore

__all__ = ["SecretVault", "Settings", "SettingsStore"]
